"""
Celery Tasks — OCR Job Pipeline

Task: process_job
  Claims the job (compare-and-set; a redelivered or duplicate message is a
  no-op), downloads the document, runs the OCR orchestrator and persists the
  outcome through owner-guarded queue writes. See pipeline.worker.

Task: dispatch_pending_jobs   (beat, every 60 s)
  Re-publishes `created` jobs that were never dispatched (broker outage at
  enqueue time) or whose message went unclaimed past dispatch_lease_seconds
  (message lost). Jobs still within their lease are left alone so the
  broker never holds two messages for one job.

Task: fail_stale_jobs         (beat, every 60 s)
  Fails jobs stuck in `active` past job_lease_seconds (timeout + margin;
  the worker crashed or was killed); their documents fail with "timeout".

Task: prune_finished_jobs     (beat, daily, only when job_retention_days > 0)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, Any, AsyncIterator

from celery import Task
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import NullPool

from docpipeline.core.config import settings
from docpipeline.workers.celery_app import celery_app

if TYPE_CHECKING:
    from docpipeline.pipeline.queue import QueueManager

logger = logging.getLogger(__name__)

# Never-dispatched jobs younger than this may still be mid-enqueue
PENDING_GRACE = timedelta(seconds=settings.dispatch_grace_seconds)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


@asynccontextmanager
async def _queue_context() -> AsyncIterator["QueueManager"]:
    """
    Per-task engine + QueueManager. NullPool because each task may run on a
    fresh event loop and pooled asyncpg connections are loop-bound.
    """
    from docpipeline.db.session import create_engine_for, create_session_factory
    from docpipeline.pipeline.queue import CeleryTaskPublisher, QueueManager

    engine = create_engine_for(settings.database_url, poolclass=NullPool)
    queue = QueueManager(create_session_factory(engine), dispatcher=CeleryTaskPublisher())
    try:
        yield queue
    finally:
        await queue.close()
        await engine.dispose()


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipeline.workers.tasks.process_job",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_job(self: Task, *, job_id: str) -> dict[str, Any]:
    try:
        return run_async(_process_job_async(uuid.UUID(job_id)))
    except OperationalError as exc:
        # Database unreachable before the job was claimed; the job is still `created`
        logger.error("Database unavailable | job=%s error=%s", job_id, exc)
        raise self.retry(exc=exc)


async def _process_job_async(job_id: uuid.UUID) -> dict[str, Any]:
    from docpipeline.pipeline.worker import PipelineWorker
    from docpipeline.processing.orchestrator import OcrOrchestrator
    from docpipeline.storage.s3 import S3DocumentStorage

    async with _queue_context() as queue:
        worker = PipelineWorker(queue, OcrOrchestrator(), S3DocumentStorage())
        return await worker.run_job(job_id)


# ---------------------------------------------------------------------------
# Maintenance tasks — Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipeline.workers.tasks.dispatch_pending_jobs",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def dispatch_pending_jobs() -> dict[str, int]:
    return run_async(_dispatch_pending_jobs_async())


async def _dispatch_pending_jobs_async() -> dict[str, int]:
    async with _queue_context() as queue:
        job_ids = await queue.pending_job_ids(
            PENDING_GRACE,
            timedelta(seconds=settings.dispatch_lease_seconds),
            limit=100,
        )
        sent = await queue.redispatch(job_ids)
    if job_ids:
        logger.info("Re-dispatched pending jobs | found=%d sent=%d", len(job_ids), sent)
    return {"pending": len(job_ids), "dispatched": sent}


@celery_app.task(
    name="docpipeline.workers.tasks.fail_stale_jobs",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def fail_stale_jobs() -> dict[str, int]:
    return run_async(_fail_stale_jobs_async())


async def _fail_stale_jobs_async() -> dict[str, int]:
    async with _queue_context() as queue:
        failed = await queue.fail_stale_jobs(timedelta(seconds=settings.job_lease_seconds))
    if failed:
        logger.warning("Stale jobs reset | count=%d", failed)
    return {"failed": failed}


@celery_app.task(
    name="docpipeline.workers.tasks.prune_finished_jobs",
    acks_late=True,
)
def prune_finished_jobs() -> dict[str, int]:
    if settings.job_retention_days <= 0:
        return {"pruned": 0}
    return run_async(_prune_finished_jobs_async(timedelta(days=settings.job_retention_days)))


async def _prune_finished_jobs_async(retention: timedelta) -> dict[str, int]:
    async with _queue_context() as queue:
        pruned = await queue.prune_finished_jobs(retention)
    return {"pruned": pruned}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="docpipeline.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
