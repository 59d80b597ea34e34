"""
Job Queue Manager

Durable OCR job queue on top of the jobs table:

  1. enqueue()   row-locks the document, enforces one live job per document
                 (pre-check + partial UNIQUE index), creates the job in
                 `created` and dispatches it after commit unless paused
  2. claim()     worker dequeue — FOR UPDATE SKIP LOCKED + compare-and-set
                 created → active; the document moves to PROCESSING
  3. complete() / fail() / report_progress()
                 worker writes, each guarded by the ownership token
                 (document.job_id == job.id and the job still active)
  4. cancel()    compare-and-set created|active → cancelled; whichever of
                 cancel and complete lands first wins. cancel_by_document()
                 and cancel_by_batch() apply it to every live job they select

Every operator action writes an AuditLog row in the same transaction.

Dispatch is a hint, not a guarantee: a successful publish stamps
jobs.dispatched_at. The dispatch_pending_jobs beat task re-publishes `created`
jobs that were never dispatched, or whose last publish is older than the
dispatch lease. Double delivery is harmless because claim() is a
compare-and-set. Jobs are claimed by priority, then age.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Protocol

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipeline.core.exceptions import (
    AlreadyQueued,
    DocumentNotFound,
    FailureKind,
    InvalidState,
    InvalidTransition,
    JobNotFound,
)
from docpipeline.db.session import session_scope
from docpipeline.models.documents import AuditLog, Document, Job, QueueSettings, utcnow
from docpipeline.pipeline.state_machine import advance_progress, revoke, transition
from docpipeline.schemas.documents import (
    LIVE_JOB_STATES,
    DocumentCategory,
    DocumentStatus,
    JobPriority,
    JobState,
    QueueStatus,
)
from docpipeline.schemas.queue import JobStatus, QueueStats

logger = logging.getLogger(__name__)

QUEUED_STAGE = "queued"

_TERMINAL_JOB_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


# ---------------------------------------------------------------------------
# Dispatcher interface
# ---------------------------------------------------------------------------

class JobDispatcher(Protocol):
    """Anything that can hand a job id to a worker (Celery, in-process, fake)."""

    async def dispatch(self, job_id: uuid.UUID) -> None: ...


@dataclass(frozen=True)
class EnqueuedJob:
    job_id:     uuid.UUID
    dispatched: bool


@dataclass(frozen=True)
class ClaimedJob:
    """What a worker needs to run a job it now owns."""
    job_id:      uuid.UUID
    document_id: uuid.UUID
    storage_key: str
    filename:    str
    media_type:  str
    category:    DocumentCategory
    attempts:    int


# ---------------------------------------------------------------------------
# Queue manager
# ---------------------------------------------------------------------------

class QueueManager:
    """
    Explicit, injectable queue instance. All state lives in the database, so
    any number of API processes and workers can share one queue.

    Usage:
        queue = QueueManager(AsyncSessionLocal, dispatcher=CeleryTaskPublisher())
        await queue.open()
        job_id = await queue.enqueue(document_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: JobDispatcher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher

    def _scope(self):
        return session_scope(self._session_factory)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Create the queue settings row on first start."""
        try:
            async with self._scope() as session:
                if await session.get(QueueSettings, 1) is None:
                    session.add(QueueSettings(id=1, paused=False))
        except IntegrityError:
            # Another process created it first
            logger.debug("Queue settings row already present")
        logger.info("Queue opened | paused=%s", await self.is_paused())

    async def close(self) -> None:
        closer = getattr(self._dispatcher, "close", None)
        if closer is not None:
            await closer()

    # ------------------------------------------------------------------
    # Enqueue / cancel / retry
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        document_id: uuid.UUID,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> uuid.UUID:
        """
        Create a job for the document.

        Raises DocumentNotFound, AlreadyQueued (a live job exists) or
        InvalidState (document quarantined or owned by a running job).
        """
        return (await self.submit(document_id, priority)).job_id

    async def submit(
        self,
        document_id: uuid.UUID,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> EnqueuedJob:
        """enqueue(), also reporting whether the job reached the broker."""
        async with self._scope() as session:
            doc = await _lock_document(session, document_id)
            if doc is None:
                raise DocumentNotFound(f"Document {document_id} not found", document_id=document_id)

            job = await self._create_job(session, doc, priority=priority)
            paused = await _is_paused(session)
            _audit(
                session, "job.enqueued", f"document:{doc.id}",
                {"job_id": str(job.id), "priority": priority.value},
            )

        logger.info(
            "Job enqueued | job=%s doc=%s priority=%s paused=%s",
            job.id, document_id, priority.value, paused,
        )
        dispatched = False if paused else await self._dispatch(job.id)
        return EnqueuedJob(job_id=job.id, dispatched=dispatched)

    async def cancel(self, job_id: uuid.UUID) -> int:
        """
        Compare-and-set created|active → cancelled. Returns the number of
        jobs cancelled (0 for unknown or already-terminal jobs).
        """
        async with self._scope() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state.in_(LIVE_JOB_STATES))
                .values(state=JobState.CANCELLED, finished_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.info("Cancel no-op | job=%s", job_id)
                return 0

            document_id = await session.scalar(select(Job.document_id).where(Job.id == job_id))
            await _detach_document(session, document_id, {job_id})
            _audit(session, "job.cancelled", f"job:{job_id}", {"document_id": str(document_id)})

        logger.info("Job cancelled | job=%s doc=%s", job_id, document_id)
        return 1

    async def cancel_by_document(self, document_id: uuid.UUID) -> int:
        """Cancel every live job of a document (normally at most one)."""
        async with self._scope() as session:
            cancelled = await _cancel_live_jobs(session, document_id)
            if cancelled:
                await _detach_document(session, document_id, set(cancelled))
                _audit(
                    session, "job.cancelled", f"document:{document_id}",
                    {"job_ids": [str(j) for j in cancelled]},
                )

        logger.info("Jobs cancelled by document | doc=%s count=%d", document_id, len(cancelled))
        return len(cancelled)

    async def cancel_by_batch(self, batch_id: uuid.UUID) -> int:
        """Cancel every live job of every document uploaded in the batch."""
        async with self._scope() as session:
            document_ids = list(await session.scalars(
                select(Document.id).where(Document.batch_id == batch_id)
            ))
            cancelled: list[uuid.UUID] = []
            for document_id in document_ids:
                ended = await _cancel_live_jobs(session, document_id)
                if ended:
                    await _detach_document(session, document_id, set(ended))
                    cancelled.extend(ended)
            if cancelled:
                _audit(
                    session, "job.cancelled", f"batch:{batch_id}",
                    {"job_ids": [str(j) for j in cancelled]},
                )

        logger.info(
            "Jobs cancelled by batch | batch=%s documents=%d count=%d",
            batch_id, len(document_ids), len(cancelled),
        )
        return len(cancelled)

    async def retry(self, job_id: uuid.UUID) -> uuid.UUID:
        """
        Re-run a failed job as a new job (retried_from = job_id). The new job
        is claimed ahead of normal work: at least HIGH priority.

        Raises JobNotFound, InvalidState (job not failed, or document
        quarantined) or AlreadyQueued.
        """
        async with self._scope() as session:
            old = await session.get(Job, job_id, with_for_update=True)
            if old is None:
                raise JobNotFound(f"Job {job_id} not found", job_id=job_id)
            if JobState(old.state) is not JobState.FAILED:
                raise InvalidState(
                    f"Only failed jobs can be retried (state={JobState(old.state).value})",
                    job_id=job_id,
                )

            doc = await _lock_document(session, old.document_id)
            if doc is None:
                raise DocumentNotFound(f"Document {old.document_id} not found", document_id=old.document_id)

            priority = JobPriority.from_rank(max(old.priority or 0, JobPriority.HIGH.rank))
            job = await self._create_job(session, doc, retried_from=old.id, priority=priority)
            doc.retry_count = (doc.retry_count or 0) + 1
            paused = await _is_paused(session)
            _audit(
                session, "job.retried", f"job:{old.id}",
                {"new_job_id": str(job.id), "document_id": str(doc.id), "retry_count": doc.retry_count},
            )

        logger.info("Job retried | old=%s new=%s doc=%s", job_id, job.id, job.document_id)
        if not paused:
            await self._dispatch(job.id)
        return job.id

    async def _create_job(
        self,
        session: AsyncSession,
        doc: Document,
        retried_from: uuid.UUID | None = None,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> Job:
        status = DocumentStatus(doc.status)
        if status is DocumentStatus.QUARANTINE:
            raise InvalidState("Document is quarantined", document_id=doc.id)

        live = await session.scalar(
            select(Job.id).where(Job.document_id == doc.id, Job.state.in_(LIVE_JOB_STATES))
        )
        if live is not None:
            raise AlreadyQueued(
                f"Document {doc.id} already has live job {live}",
                document_id=doc.id, job_id=live,
            )
        if status is DocumentStatus.PROCESSING:
            raise InvalidState("Document is being processed", document_id=doc.id)

        job = Job(
            document_id=doc.id,
            state=JobState.CREATED,
            priority=priority.rank,
            attempts=0,
            retried_from=retried_from,
        )
        session.add(job)
        try:
            await session.flush()
        except IntegrityError as exc:
            # Lost the race against a concurrent enqueue; the partial index decided
            raise AlreadyQueued(f"Document {doc.id} already has a live job", document_id=doc.id) from exc

        doc.job_id = job.id
        doc.queue_status = QueueStatus.QUEUED
        doc.processing_stage = QUEUED_STAGE
        return job

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    async def is_paused(self) -> bool:
        async with self._scope() as session:
            return await _is_paused(session)

    async def pause_all(self) -> None:
        async with self._scope() as session:
            row = await _settings_row(session)
            if not row.paused:
                row.paused = True
                _audit(session, "queue.paused", "queue", {})
        logger.info("Queue paused")

    async def resume_all(self) -> int:
        """Clear the pause flag and dispatch every job still in `created`."""
        async with self._scope() as session:
            row = await _settings_row(session)
            was_paused = row.paused
            row.paused = False
            pending = list(await session.scalars(
                select(Job.id)
                .where(Job.state == JobState.CREATED)
                .order_by(Job.priority.desc(), Job.created_at)
            ))
            if was_paused:
                _audit(session, "queue.resumed", "queue", {"pending": len(pending)})

        logger.info("Queue resumed | pending=%d", len(pending))
        for job_id in pending:
            await self._dispatch(job_id)
        return len(pending)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_status(self, job_id: uuid.UUID) -> Optional[JobStatus]:
        async with self._scope() as session:
            job = await session.get(Job, job_id)
            return JobStatus.model_validate(job) if job is not None else None

    async def list_active(self, limit: int = 50) -> list[JobStatus]:
        return await self._list(Job.state.in_(LIVE_JOB_STATES), limit)

    async def list_failed(self, limit: int = 50) -> list[JobStatus]:
        return await self._list(Job.state == JobState.FAILED, limit)

    async def _list(self, condition, limit: int) -> list[JobStatus]:
        async with self._scope() as session:
            jobs = await session.scalars(
                select(Job).where(condition).order_by(Job.created_at.desc()).limit(limit)
            )
            return [JobStatus.model_validate(job) for job in jobs]

    async def get_stats(self) -> QueueStats:
        async with self._scope() as session:
            rows = await session.execute(select(Job.state, func.count()).group_by(Job.state))
            counts = {state: 0 for state in JobState}
            for state, count in rows:
                counts[JobState(state)] = count
            return QueueStats(paused=await _is_paused(session), counts=counts)

    async def get_document(self, document_id: uuid.UUID) -> Document:
        async with self._scope() as session:
            doc = await session.get(Document, document_id)
            if doc is None:
                raise DocumentNotFound(f"Document {document_id} not found", document_id=document_id)
            return doc

    async def pending_job_ids(
        self,
        grace: timedelta,
        lease: timedelta,
        limit: int = 100,
    ) -> list[uuid.UUID]:
        """
        `created` jobs that need another publish: never dispatched and older
        than `grace` (the publish failed), or dispatched longer than `lease`
        ago and still unclaimed (the message was lost). A job whose message is
        merely waiting behind a backlog is left alone until its lease expires.
        """
        async with self._scope() as session:
            if await _is_paused(session):
                return []
            now = utcnow()
            return list(await session.scalars(
                select(Job.id)
                .where(
                    Job.state == JobState.CREATED,
                    or_(
                        and_(Job.dispatched_at.is_(None), Job.created_at < now - grace),
                        Job.dispatched_at < now - lease,
                    ),
                )
                .order_by(Job.priority.desc(), Job.created_at)
                .limit(limit)
            ))

    async def redispatch(self, job_ids: list[uuid.UUID]) -> int:
        sent = 0
        for job_id in job_ids:
            if await self._dispatch(job_id):
                sent += 1
        return sent

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def claim(self, job_id: uuid.UUID | None = None) -> Optional[ClaimedJob]:
        """
        Take ownership of a `created` job (the given one, or the next by
        priority, then age).

        Returns None while paused, when nothing is claimable, or when another
        worker won the compare-and-set.
        """
        async with self._scope() as session:
            if await _is_paused(session):
                return None

            stmt = select(Job).where(Job.state == JobState.CREATED)
            if job_id is not None:
                stmt = stmt.where(Job.id == job_id)
            stmt = (
                stmt.order_by(Job.priority.desc(), Job.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job = (await session.execute(stmt)).scalars().first()
            if job is None:
                return None

            claimed_id, document_id, attempts = job.id, job.document_id, (job.attempts or 0) + 1
            result = await session.execute(
                update(Job)
                .where(Job.id == claimed_id, Job.state == JobState.CREATED)
                .values(state=JobState.ACTIVE, attempts=attempts, started_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None

            doc = await _lock_document(session, document_id)
            if doc is None or doc.job_id != claimed_id:
                await _end_job(session, claimed_id, JobState.CANCELLED, "document no longer owned by job")
                logger.warning("Claimed orphan job, cancelled | job=%s doc=%s", claimed_id, document_id)
                return None

            try:
                transition(doc, DocumentStatus.PROCESSING, stage="starting")
            except InvalidTransition as exc:
                await _end_job(session, claimed_id, JobState.FAILED, exc.message)
                doc.queue_status = QueueStatus.FAILED
                logger.error("Claim rejected by state machine | job=%s doc=%s error=%s", claimed_id, doc.id, exc)
                return None
            doc.queue_status = QueueStatus.ACTIVE

            claimed = ClaimedJob(
                job_id=claimed_id,
                document_id=doc.id,
                storage_key=doc.storage_key,
                filename=doc.filename,
                media_type=doc.media_type,
                category=DocumentCategory(doc.category),
                attempts=attempts,
            )

        logger.info("Job claimed | job=%s doc=%s attempt=%d", claimed.job_id, claimed.document_id, attempts)
        return claimed

    async def is_owner(self, job_id: uuid.UUID, document_id: uuid.UUID) -> bool:
        async with self._scope() as session:
            return await _owns(session, job_id, document_id)

    async def report_progress(
        self,
        job_id: uuid.UUID,
        document_id: uuid.UUID,
        progress: int,
        stage: str | None = None,
        message: str | None = None,
    ) -> bool:
        """Owner-guarded progress write. False means the worker lost ownership."""
        async with self._scope() as session:
            doc = await _lock_document(session, document_id)
            if doc is None or not await _owns(session, job_id, document_id, doc):
                return False
            advance_progress(doc, progress, stage=stage, message=message)
            return True

    async def complete(
        self,
        job_id: uuid.UUID,
        document_id: uuid.UUID,
        payload: dict[str, Any],
        *,
        confidence: float,
        category: DocumentCategory | None = None,
        message: str | None = None,
    ) -> bool:
        """Finish an owned job successfully. False when cancel won the race."""
        async with self._scope() as session:
            doc = await _lock_document(session, document_id)
            if doc is None or not await _end_owned_job(session, job_id, doc, JobState.COMPLETED):
                logger.warning("Stale completion abandoned | job=%s doc=%s", job_id, document_id)
                return False

            doc.ocr_payload = payload
            doc.ocr_confidence = confidence
            if category is not None:
                doc.category = category
            transition(doc, DocumentStatus.PROCESSED, message=message)
            doc.queue_status = QueueStatus.COMPLETED
            _audit(
                session, "document.processed", f"document:{doc.id}",
                {"job_id": str(job_id), "confidence": confidence, "provider": payload.get("provider")},
            )
        return True

    async def fail(
        self,
        job_id: uuid.UUID,
        document_id: uuid.UUID,
        message: str,
        *,
        failure_kind: FailureKind | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Fail an owned job and its document. False when the worker lost ownership."""
        async with self._scope() as session:
            doc = await _lock_document(session, document_id)
            if doc is None or not await _end_owned_job(session, job_id, doc, JobState.FAILED, message):
                logger.warning("Stale failure abandoned | job=%s doc=%s", job_id, document_id)
                return False

            if payload is not None:
                doc.ocr_payload = payload
            doc.ocr_confidence = 0.0
            transition(doc, DocumentStatus.FAILED, message=message)
            doc.queue_status = QueueStatus.FAILED
            _audit(
                session, "document.failed", f"document:{doc.id}",
                {"job_id": str(job_id), "failure_kind": failure_kind.value if failure_kind else None,
                 "message": message},
                success=False,
            )
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def fail_stale_jobs(self, older_than: timedelta) -> int:
        """
        Reset jobs stuck in `active` past their lease (worker crashed or was
        killed): the job fails and its document fails with "timeout".
        """
        cutoff = utcnow() - older_than
        message = FailureKind.TIMEOUT.message
        failed = 0
        async with self._scope() as session:
            stale = list(await session.scalars(
                select(Job)
                .where(Job.state == JobState.ACTIVE, Job.started_at < cutoff)
                .with_for_update(skip_locked=True)
            ))
            for job in stale:
                doc = await _lock_document(session, job.document_id)
                if doc is not None and doc.job_id == job.id:
                    if not await _end_owned_job(session, job.id, doc, JobState.FAILED, message):
                        continue
                    if DocumentStatus(doc.status) is DocumentStatus.PROCESSING:
                        transition(doc, DocumentStatus.FAILED, message=message)
                    doc.queue_status = QueueStatus.FAILED
                else:
                    await _end_job(session, job.id, JobState.FAILED, message)
                failed += 1
                logger.warning("Stale job failed | job=%s doc=%s started_at=%s", job.id, job.document_id, job.started_at)
            if failed:
                _audit(session, "queue.stale_jobs_failed", "queue", {"count": failed}, success=False)
        return failed

    async def prune_finished_jobs(self, older_than: timedelta) -> int:
        """Delete terminal jobs finished before the retention window."""
        cutoff = utcnow() - older_than
        async with self._scope() as session:
            result = await session.execute(
                delete(Job)
                .where(Job.state.in_(_TERMINAL_JOB_STATES), Job.finished_at < cutoff)
                .execution_options(synchronize_session=False)
            )
        logger.info("Finished jobs pruned | count=%d cutoff=%s", result.rowcount, cutoff.isoformat())
        return result.rowcount

    # ------------------------------------------------------------------
    # Quarantine
    # ------------------------------------------------------------------

    async def quarantine(self, document_id: uuid.UUID, reason: str) -> Document:
        """
        Operator hold. Cancels any live job first, so a running worker loses
        ownership and abandons its writes.
        """
        async with self._scope() as session:
            doc = await _lock_document(session, document_id)
            if doc is None:
                raise DocumentNotFound(f"Document {document_id} not found", document_id=document_id)

            cancelled = await _cancel_live_jobs(session, document_id)
            if doc.job_id is not None and doc.job_id in cancelled:
                doc.job_id = None
                doc.queue_status = QueueStatus.CANCELLED
                revoke(doc)
            transition(doc, DocumentStatus.QUARANTINE, message=reason)
            _audit(
                session, "document.quarantined", f"document:{doc.id}",
                {"reason": reason, "cancelled_jobs": [str(j) for j in cancelled]},
            )

        logger.info("Document quarantined | doc=%s reason=%s", document_id, reason)
        return doc

    async def release(self, document_id: uuid.UUID) -> Document:
        async with self._scope() as session:
            doc = await _lock_document(session, document_id)
            if doc is None:
                raise DocumentNotFound(f"Document {document_id} not found", document_id=document_id)
            transition(doc, DocumentStatus.UPLOADED)
            doc.queue_status = None
            _audit(session, "document.released", f"document:{doc.id}", {})

        logger.info("Document released | doc=%s", document_id)
        return doc

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, job_id: uuid.UUID) -> bool:
        if self._dispatcher is None:
            return False
        try:
            await self._dispatcher.dispatch(job_id)
        except Exception as exc:
            # Non-fatal: the job stays `created` with dispatched_at unset and
            # dispatch_pending_jobs re-publishes it.
            logger.error("Job dispatch failed | job=%s error=%s", job_id, exc)
            return False

        async with self._scope() as session:
            await session.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(dispatched_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        return True


# ---------------------------------------------------------------------------
# Session-level helpers
# ---------------------------------------------------------------------------

async def _lock_document(session: AsyncSession, document_id: uuid.UUID) -> Document | None:
    result = await session.execute(
        select(Document).where(Document.id == document_id).with_for_update()
    )
    return result.scalars().first()


async def _settings_row(session: AsyncSession) -> QueueSettings:
    row = await session.get(QueueSettings, 1, with_for_update=True)
    if row is None:
        row = QueueSettings(id=1, paused=False)
        session.add(row)
    return row


async def _is_paused(session: AsyncSession) -> bool:
    row = await session.get(QueueSettings, 1)
    return bool(row is not None and row.paused)


async def _owns(
    session: AsyncSession,
    job_id: uuid.UUID,
    document_id: uuid.UUID,
    doc: Document | None = None,
) -> bool:
    if doc is None:
        doc = await session.get(Document, document_id)
    if doc is None or doc.job_id != job_id:
        return False
    state = await session.scalar(select(Job.state).where(Job.id == job_id))
    return state is not None and JobState(state) is JobState.ACTIVE


async def _end_job(
    session: AsyncSession,
    job_id: uuid.UUID,
    state: JobState,
    error: str | None = None,
) -> bool:
    """Compare-and-set a live job into a terminal state."""
    values: dict[str, Any] = {"state": state, "finished_at": utcnow()}
    if error is not None:
        values["last_error"] = error
    result = await session.execute(
        update(Job)
        .where(Job.id == job_id, Job.state.in_(LIVE_JOB_STATES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def _end_owned_job(
    session: AsyncSession,
    job_id: uuid.UUID,
    doc: Document,
    state: JobState,
    error: str | None = None,
) -> bool:
    if doc.job_id != job_id:
        return False
    result = await session.execute(
        update(Job)
        .where(Job.id == job_id, Job.state == JobState.ACTIVE)
        .values(state=state, finished_at=utcnow(), last_error=error)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def _cancel_live_jobs(session: AsyncSession, document_id: uuid.UUID) -> list[uuid.UUID]:
    live = list(await session.scalars(
        select(Job.id).where(Job.document_id == document_id, Job.state.in_(LIVE_JOB_STATES))
    ))
    cancelled = [job_id for job_id in live if await _end_job(session, job_id, JobState.CANCELLED)]
    return cancelled


async def _detach_document(
    session: AsyncSession,
    document_id: uuid.UUID | None,
    job_ids: set[uuid.UUID],
) -> None:
    """Cancellation side-effect, applied only if the document still points at one of the jobs."""
    if document_id is None:
        return
    doc = await _lock_document(session, document_id)
    if doc is None or doc.job_id not in job_ids:
        return
    doc.job_id = None
    doc.queue_status = QueueStatus.CANCELLED
    revoke(doc)


def _audit(
    session: AsyncSession,
    action: str,
    resource: str | None,
    metadata: dict,
    success: bool = True,
) -> None:
    # Not flushed here; the caller's transaction commits it with the change
    session.add(AuditLog(action=action, resource=resource, doc_metadata=metadata, success=success))


# ---------------------------------------------------------------------------
# Celery dispatcher — thin abstraction over apply_async()
# Injected into QueueManager so it can be replaced in tests.
# ---------------------------------------------------------------------------

class CeleryTaskPublisher:
    """
    Sends process_job to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def dispatch(self, job_id: uuid.UUID) -> None:
        from docpipeline.workers.tasks import process_job

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_job.apply_async(kwargs={"job_id": str(job_id)}),
        )
        logger.info("Processing task published | job=%s", job_id)
