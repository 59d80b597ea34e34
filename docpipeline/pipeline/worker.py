"""
Pipeline Worker

Drives one claimed job through download → OCR orchestrator → persist:

   5%  starting      (claim: document enters PROCESSING)
  20%  downloading   raw bytes from storage
  40+  parsing / cloud_ocr / local_ocr / postprocess   (orchestrator)
  90%  saving
 100%  completed     (document PROCESSED) — or FAILED with a classified message

Every write goes through the QueueManager's owner-guarded operations. If the
job is cancelled or the document quarantined mid-flight, the worker sees
ownership gone at the next checkpoint and abandons its result.

Used both by the Celery task (run_job) and as a standalone polling loop
(run_forever) for deployments without a broker.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any

from docpipeline.core.config import settings
from docpipeline.core.exceptions import DocumentFailure, FailureKind
from docpipeline.pipeline.queue import ClaimedJob, QueueManager
from docpipeline.processing.orchestrator import OcrOrchestrator
from docpipeline.storage.s3 import DocumentStore

logger = logging.getLogger(__name__)

PROGRESS_STARTING    = 5
PROGRESS_DOWNLOADING = 20
PROGRESS_SAVING      = 90


def classify_exception(exc: BaseException) -> FailureKind:
    """Map an exception that escaped processing to a user-facing failure kind."""
    if isinstance(exc, DocumentFailure):
        return exc.failure_kind
    if isinstance(exc, FileNotFoundError):
        return FailureKind.CORRUPTED_FILE
    if isinstance(exc, asyncio.TimeoutError):
        return FailureKind.TIMEOUT
    return FailureKind.PROVIDER_OUTAGE


class PipelineWorker:

    def __init__(
        self,
        queue: QueueManager,
        orchestrator: OcrOrchestrator,
        storage: DocumentStore,
        *,
        poll_interval: float | None = None,
        job_timeout: float | None = None,
    ) -> None:
        self._queue = queue
        self._orchestrator = orchestrator
        self._storage = storage
        self._poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self._job_timeout = job_timeout or settings.job_timeout_seconds

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_job(self, job_id: uuid.UUID | None = None) -> dict[str, Any]:
        """Claim and run one job. Safe to call for a job another worker already took."""
        claimed = await self._queue.claim(job_id)
        if claimed is None:
            logger.info("Nothing to claim | job=%s", job_id or "any")
            return {"status": "skipped", "job_id": str(job_id) if job_id else None}
        return await self._run_claimed(claimed)

    async def run_once(self) -> bool:
        """Process the oldest claimable job. False when the queue was empty or paused."""
        outcome = await self.run_job()
        return outcome["status"] != "skipped"

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        logger.info("Worker loop started | poll_interval=%.1fs", self._poll_interval)
        while not stop_event.is_set():
            if await self.run_once():
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker loop stopped")

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _run_claimed(self, job: ClaimedJob) -> dict[str, Any]:
        t0 = time.monotonic()
        lost = False

        async def on_progress(progress: int, stage: str) -> None:
            nonlocal lost
            if not lost and not await self._queue.report_progress(job.job_id, job.document_id, progress, stage):
                lost = True

        async def should_cancel() -> bool:
            nonlocal lost
            if not lost and not await self._queue.is_owner(job.job_id, job.document_id):
                lost = True
            return lost

        try:
            await on_progress(PROGRESS_STARTING, "starting")
            await on_progress(PROGRESS_DOWNLOADING, "downloading")
            if lost:
                return self._abandoned(job)

            data = await self._storage.get_bytes(job.storage_key)
            result = await asyncio.wait_for(
                self._orchestrator.process(
                    data,
                    job.media_type,
                    job.category,
                    filename=job.filename,
                    should_cancel=should_cancel,
                    on_progress=on_progress,
                ),
                timeout=self._job_timeout,
            )
        except Exception as exc:
            kind = classify_exception(exc)
            if isinstance(exc, (DocumentFailure, FileNotFoundError, asyncio.TimeoutError)):
                logger.warning("Job failed | job=%s doc=%s kind=%s error=%s", job.job_id, job.document_id, kind.value, exc)
            else:
                logger.exception("Unexpected worker error | job=%s doc=%s", job.job_id, job.document_id)
            await self._queue.fail(job.job_id, job.document_id, kind.message, failure_kind=kind)
            return {"status": "failed", "job_id": str(job.job_id), "failure_kind": kind.value}

        if result.cancelled or lost:
            return self._abandoned(job)

        await on_progress(PROGRESS_SAVING, "saving")
        payload = result.to_payload()

        if result.ok:
            saved = await self._queue.complete(
                job.job_id, job.document_id, payload,
                confidence=result.confidence,
                category=result.category,
                message=result.message,
            )
        else:
            saved = await self._queue.fail(
                job.job_id, job.document_id, result.message,
                failure_kind=result.failure_kind,
                payload=payload,
            )
        if not saved:
            return self._abandoned(job)

        status = "processed" if result.ok else "failed"
        logger.info(
            "Job finished | job=%s doc=%s status=%s confidence=%.3f elapsed_ms=%.0f",
            job.job_id, job.document_id, status, result.confidence, (time.monotonic() - t0) * 1000,
        )
        return {
            "status":       status,
            "job_id":       str(job.job_id),
            "document_id":  str(job.document_id),
            "confidence":   result.confidence,
            "failure_kind": result.failure_kind.value if result.failure_kind else None,
        }

    @staticmethod
    def _abandoned(job: ClaimedJob) -> dict[str, Any]:
        logger.info("Job abandoned, ownership lost | job=%s doc=%s", job.job_id, job.document_id)
        return {"status": "abandoned", "job_id": str(job.job_id)}
