"""
Unit tests for QueueManager against a real (SQLite) database.

Coverage:
  - enqueue: job creation, document linkage, dispatch, audit trail
  - one live job per document (pre-check and partial UNIQUE index)
  - enqueue rejected for unknown / quarantined / processing documents
  - pause / resume: no dispatch and no claims while paused
  - claim: compare-and-set, duplicate delivery is a no-op
  - owner-guarded worker writes (progress, complete, fail)
  - cancel vs. complete race: first write wins
  - retry of failed jobs
  - stale-job reset, pruning, quarantine / release
  - dispatch failure is non-fatal; submit reports it
  - re-dispatch only of never-dispatched or lease-expired jobs
  - concurrent enqueue of one document yields exactly one job
  - priority ordering of claims, retry bump, cancel by batch
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from docpipeline.core.config import settings
from docpipeline.core.exceptions import (
    AlreadyQueued,
    DocumentNotFound,
    FailureKind,
    InvalidState,
    InvalidTransition,
    JobNotFound,
)
from docpipeline.db.session import session_scope
from docpipeline.models.documents import AuditLog, Document, Job, utcnow
from docpipeline.schemas.documents import DocumentStatus, JobPriority, JobState, QueueStatus

pytestmark = pytest.mark.unit


async def _load(session_factory, model, ident):
    async with session_factory() as session:
        return await session.get(model, ident)


async def _actions(session_factory) -> list[str]:
    async with session_factory() as session:
        return list(await session.scalars(select(AuditLog.action).order_by(AuditLog.id)))


async def _backdate(session_factory, job_id, **columns: timedelta) -> None:
    """Move the given Job timestamp columns into the past."""
    now = utcnow()
    async with session_scope(session_factory) as session:
        await session.execute(
            update(Job).where(Job.id == job_id).values(**{k: now - ago for k, ago in columns.items()})
        )


# ─────────────────────────────────────────────────────────────────────────────
# Enqueue
# ─────────────────────────────────────────────────────────────────────────────

class TestEnqueue:

    async def test_enqueue_creates_job_and_links_document(self, queue, dispatcher, make_document, session_factory):
        doc = await make_document()

        job_id = await queue.enqueue(doc.id)

        job = await _load(session_factory, Job, job_id)
        stored = await _load(session_factory, Document, doc.id)
        assert job.state is JobState.CREATED
        assert job.document_id == doc.id
        assert stored.job_id == job_id
        assert stored.queue_status is QueueStatus.QUEUED
        assert stored.status is DocumentStatus.UPLOADED
        assert dispatcher.sent == [job_id]
        assert "job.enqueued" in await _actions(session_factory)

    async def test_second_enqueue_raises_already_queued(self, queue, make_document):
        doc = await make_document()
        await queue.enqueue(doc.id)

        with pytest.raises(AlreadyQueued):
            await queue.enqueue(doc.id)

    async def test_enqueue_unknown_document(self, queue):
        with pytest.raises(DocumentNotFound):
            await queue.enqueue(uuid.uuid4())

    async def test_enqueue_quarantined_document(self, queue, make_document):
        doc = await make_document(status=DocumentStatus.QUARANTINE)
        with pytest.raises(InvalidState):
            await queue.enqueue(doc.id)

    async def test_enqueue_processing_document_without_live_job(self, queue, make_document):
        doc = await make_document(status=DocumentStatus.PROCESSING)
        with pytest.raises(InvalidState):
            await queue.enqueue(doc.id)

    async def test_processed_document_can_be_reprocessed(self, queue, make_document, session_factory):
        doc = await make_document(status=DocumentStatus.PROCESSED)
        job_id = await queue.enqueue(doc.id)

        claimed = await queue.claim(job_id)
        assert claimed is not None
        stored = await _load(session_factory, Document, doc.id)
        assert stored.status is DocumentStatus.PROCESSING
        assert stored.processing_progress == 0

    async def test_partial_unique_index_rejects_second_live_job(self, make_document, session_factory):
        doc = await make_document()
        with pytest.raises(IntegrityError):
            async with session_scope(session_factory) as session:
                session.add(Job(document_id=doc.id, state=JobState.CREATED))
                session.add(Job(document_id=doc.id, state=JobState.ACTIVE))

    async def test_terminal_jobs_do_not_count_as_live(self, make_document, session_factory):
        doc = await make_document()
        async with session_scope(session_factory) as session:
            session.add(Job(document_id=doc.id, state=JobState.FAILED))
            session.add(Job(document_id=doc.id, state=JobState.CANCELLED))
            session.add(Job(document_id=doc.id, state=JobState.CREATED))

    async def test_dispatch_failure_is_not_fatal(self, queue, dispatcher, make_document, session_factory):
        dispatcher.fail = True
        doc = await make_document()

        job_id = await queue.enqueue(doc.id)

        job = await _load(session_factory, Job, job_id)
        assert job.state is JobState.CREATED
        assert await queue.pending_job_ids(timedelta(seconds=-1), timedelta(hours=1)) == [job_id]

    async def test_submit_reports_dispatch_outcome(self, queue, dispatcher, make_document):
        sent = await queue.submit((await make_document()).id)
        dispatcher.fail = True
        lost = await queue.submit((await make_document()).id)

        assert sent.dispatched is True
        assert lost.dispatched is False
        assert dispatcher.sent == [sent.job_id]

    async def test_concurrent_enqueue_creates_one_job(self, queue, make_document, session_factory):
        doc = await make_document()

        results = await asyncio.gather(
            *(queue.enqueue(doc.id) for _ in range(8)),
            return_exceptions=True,
        )

        job_ids = [r for r in results if isinstance(r, uuid.UUID)]
        rejected = [r for r in results if isinstance(r, AlreadyQueued)]
        assert len(job_ids) == 1
        assert len(rejected) == 7
        async with session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(Job).where(Job.document_id == doc.id))
        assert count == 1
        stored = await _load(session_factory, Document, doc.id)
        assert stored.job_id == job_ids[0]


# ─────────────────────────────────────────────────────────────────────────────
# Re-dispatch of pending jobs
# ─────────────────────────────────────────────────────────────────────────────

class TestPendingDispatch:

    GRACE = timedelta(minutes=2)
    LEASE = timedelta(minutes=15)

    async def test_dispatch_stamps_dispatched_at(self, queue, make_document, session_factory):
        job_id = await queue.enqueue((await make_document()).id)

        job = await _load(session_factory, Job, job_id)
        assert job.dispatched_at is not None

    async def test_dispatched_job_within_lease_is_not_redispatched(self, queue, dispatcher, make_document, session_factory):
        job_id = await queue.enqueue((await make_document()).id)
        # Waiting behind a backlog, well past the grace period
        await _backdate(session_factory, job_id, created_at=timedelta(minutes=10), dispatched_at=timedelta(minutes=10))

        assert await queue.pending_job_ids(self.GRACE, self.LEASE) == []
        assert dispatcher.sent == [job_id]

    async def test_unclaimed_job_past_lease_is_redispatched(self, queue, dispatcher, make_document, session_factory):
        job_id = await queue.enqueue((await make_document()).id)
        await _backdate(session_factory, job_id, created_at=timedelta(minutes=20), dispatched_at=timedelta(minutes=16))

        pending = await queue.pending_job_ids(self.GRACE, self.LEASE)
        assert pending == [job_id]
        assert await queue.redispatch(pending) == 1
        assert dispatcher.sent == [job_id, job_id]
        # Re-publishing renews the lease
        assert await queue.pending_job_ids(self.GRACE, self.LEASE) == []

    async def test_never_dispatched_job_waits_for_grace(self, queue, dispatcher, make_document, session_factory):
        dispatcher.fail = True
        job_id = await queue.enqueue((await make_document()).id)

        assert await queue.pending_job_ids(self.GRACE, self.LEASE) == []

        await _backdate(session_factory, job_id, created_at=timedelta(minutes=3))
        assert await queue.pending_job_ids(self.GRACE, self.LEASE) == [job_id]

    async def test_claimed_job_is_never_pending(self, queue, make_document, session_factory):
        job_id = await queue.enqueue((await make_document()).id)
        await queue.claim(job_id)
        await _backdate(session_factory, job_id, created_at=timedelta(hours=1), dispatched_at=timedelta(hours=1))

        assert await queue.pending_job_ids(self.GRACE, self.LEASE) == []


# ─────────────────────────────────────────────────────────────────────────────
# Pause / resume
# ─────────────────────────────────────────────────────────────────────────────

class TestPauseResume:

    async def test_paused_queue_accepts_but_does_not_dispatch(self, queue, dispatcher, make_document):
        await queue.pause_all()
        doc = await make_document()

        job_id = await queue.enqueue(doc.id)

        assert await queue.is_paused()
        assert dispatcher.sent == []
        assert await queue.claim(job_id) is None
        assert await queue.pending_job_ids(timedelta(seconds=-1), timedelta(seconds=-1)) == []

    async def test_resume_dispatches_pending_jobs(self, queue, dispatcher, make_document, session_factory):
        await queue.pause_all()
        first = await queue.enqueue((await make_document()).id)
        second = await queue.enqueue((await make_document()).id)

        dispatched = await queue.resume_all()

        assert dispatched == 2
        assert set(dispatcher.sent) == {first, second}
        assert not await queue.is_paused()
        actions = await _actions(session_factory)
        assert "queue.paused" in actions and "queue.resumed" in actions

    async def test_pause_is_persisted_across_manager_instances(self, queue, session_factory):
        from docpipeline.pipeline.queue import QueueManager

        await queue.pause_all()
        other = QueueManager(session_factory)
        await other.open()
        assert await other.is_paused()


# ─────────────────────────────────────────────────────────────────────────────
# Claim and owner-guarded writes
# ─────────────────────────────────────────────────────────────────────────────

class TestClaim:

    async def test_claim_moves_job_and_document(self, queue, make_document, session_factory):
        doc = await make_document(filename="scan.pdf", media_type="application/pdf")
        job_id = await queue.enqueue(doc.id)

        claimed = await queue.claim(job_id)

        assert claimed.job_id == job_id
        assert claimed.document_id == doc.id
        assert claimed.filename == "scan.pdf"
        assert claimed.attempts == 1
        job = await _load(session_factory, Job, job_id)
        stored = await _load(session_factory, Document, doc.id)
        assert job.state is JobState.ACTIVE
        assert job.started_at is not None
        assert stored.status is DocumentStatus.PROCESSING
        assert stored.queue_status is QueueStatus.ACTIVE

    async def test_duplicate_claim_is_noop(self, queue, make_document):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)

        assert await queue.claim(job_id) is not None
        assert await queue.claim(job_id) is None

    async def test_claim_without_id_takes_oldest(self, queue, make_document):
        first = await queue.enqueue((await make_document()).id)
        await queue.enqueue((await make_document()).id)

        claimed = await queue.claim()
        assert claimed.job_id == first

    async def test_claim_without_id_prefers_higher_priority(self, queue, make_document):
        older = await queue.enqueue((await make_document()).id)
        urgent = await queue.enqueue((await make_document()).id, priority=JobPriority.URGENT)
        high = await queue.enqueue((await make_document()).id, priority=JobPriority.HIGH)

        assert (await queue.claim()).job_id == urgent
        assert (await queue.claim()).job_id == high
        assert (await queue.claim()).job_id == older
        assert (await queue.get_status(urgent)).priority is JobPriority.URGENT

    async def test_claim_empty_queue(self, queue):
        assert await queue.claim() is None

    async def test_progress_requires_ownership(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)

        assert await queue.report_progress(job_id, doc.id, 40, "parsing")
        assert not await queue.report_progress(uuid.uuid4(), doc.id, 60, "ocr")

        stored = await _load(session_factory, Document, doc.id)
        assert stored.processing_progress == 40
        assert stored.processing_stage == "parsing"

    async def test_complete_marks_document_processed(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)

        payload = {"provider": "text", "confidence": 1.0, "fields": {"route": "A — B"}}
        assert await queue.complete(job_id, doc.id, payload, confidence=1.0, message="processed by text")

        job = await _load(session_factory, Job, job_id)
        stored = await _load(session_factory, Document, doc.id)
        assert job.state is JobState.COMPLETED
        assert job.finished_at is not None
        assert stored.status is DocumentStatus.PROCESSED
        assert stored.processing_progress == 100
        assert stored.queue_status is QueueStatus.COMPLETED
        assert stored.ocr_payload["fields"] == {"route": "A — B"}
        assert stored.ocr_confidence == 1.0

    async def test_fail_records_message_and_kind(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)

        assert await queue.fail(job_id, doc.id, "file corrupted", failure_kind=FailureKind.CORRUPTED_FILE)

        job = await _load(session_factory, Job, job_id)
        stored = await _load(session_factory, Document, doc.id)
        assert job.state is JobState.FAILED
        assert job.last_error == "file corrupted"
        assert stored.status is DocumentStatus.FAILED
        assert stored.processing_message == "file corrupted"
        assert stored.queue_status is QueueStatus.FAILED

    async def test_complete_of_unclaimed_job_is_rejected(self, queue, make_document):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        assert not await queue.complete(job_id, doc.id, {}, confidence=1.0)


# ─────────────────────────────────────────────────────────────────────────────
# Cancel
# ─────────────────────────────────────────────────────────────────────────────

class TestCancel:

    async def test_cancel_queued_job(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)

        assert await queue.cancel(job_id) == 1

        job = await _load(session_factory, Job, job_id)
        stored = await _load(session_factory, Document, doc.id)
        assert job.state is JobState.CANCELLED
        assert stored.job_id is None
        assert stored.queue_status is QueueStatus.CANCELLED
        assert stored.status is DocumentStatus.UPLOADED

    async def test_cancel_unknown_or_finished_job_is_noop(self, queue, make_document):
        assert await queue.cancel(uuid.uuid4()) == 0

        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)
        await queue.complete(job_id, doc.id, {}, confidence=0.9)
        assert await queue.cancel(job_id) == 0

    async def test_cancel_wins_over_late_completion(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)

        assert await queue.cancel(job_id) == 1
        assert not await queue.is_owner(job_id, doc.id)
        assert not await queue.report_progress(job_id, doc.id, 80, "postprocess")
        assert not await queue.complete(job_id, doc.id, {"provider": "tesseract"}, confidence=0.8)

        stored = await _load(session_factory, Document, doc.id)
        assert stored.status is DocumentStatus.UPLOADED
        assert stored.ocr_payload is None

    async def test_completion_wins_over_late_cancel(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)
        await queue.complete(job_id, doc.id, {"provider": "text"}, confidence=1.0)

        assert await queue.cancel(job_id) == 0
        stored = await _load(session_factory, Document, doc.id)
        assert stored.status is DocumentStatus.PROCESSED

    async def test_cancel_by_document(self, queue, make_document):
        doc = await make_document()
        await queue.enqueue(doc.id)

        assert await queue.cancel_by_document(doc.id) == 1
        assert await queue.cancel_by_document(doc.id) == 0

    async def test_cancel_by_batch(self, queue, make_document, session_factory):
        batch_id = uuid.uuid4()
        queued = await make_document(batch_id=batch_id)
        running = await make_document(batch_id=batch_id)
        outsider = await make_document(batch_id=uuid.uuid4())
        await queue.enqueue(queued.id)
        await queue.claim(await queue.enqueue(running.id))
        other_job = await queue.enqueue(outsider.id)

        assert await queue.cancel_by_batch(batch_id) == 2

        for doc in (queued, running):
            stored = await _load(session_factory, Document, doc.id)
            assert stored.job_id is None
            assert stored.status is DocumentStatus.UPLOADED
        assert (await _load(session_factory, Job, other_job)).state is JobState.CREATED
        assert await queue.cancel_by_batch(batch_id) == 0
        assert await queue.cancel_by_batch(uuid.uuid4()) == 0

    async def test_document_can_be_requeued_after_cancel(self, queue, make_document):
        doc = await make_document()
        first = await queue.enqueue(doc.id)
        await queue.cancel(first)

        second = await queue.enqueue(doc.id)
        assert second != first


# ─────────────────────────────────────────────────────────────────────────────
# Retry
# ─────────────────────────────────────────────────────────────────────────────

class TestRetry:

    async def test_retry_failed_job_creates_new_job(self, queue, dispatcher, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)
        await queue.fail(job_id, doc.id, "provider outage — retry later")

        new_job_id = await queue.retry(job_id)

        new_job = await _load(session_factory, Job, new_job_id)
        stored = await _load(session_factory, Document, doc.id)
        assert new_job.retried_from == job_id
        assert new_job.state is JobState.CREATED
        assert stored.retry_count == 1
        assert stored.job_id == new_job_id
        assert dispatcher.sent[-1] == new_job_id

        claimed = await queue.claim(new_job_id)
        assert claimed is not None

    async def test_retry_runs_at_high_priority(self, queue, make_document):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)
        await queue.fail(job_id, doc.id, "timeout")
        fresh = await queue.enqueue((await make_document()).id)

        new_job_id = await queue.retry(job_id)

        assert (await queue.get_status(new_job_id)).priority is JobPriority.HIGH
        assert (await queue.claim()).job_id == new_job_id
        assert (await queue.claim()).job_id == fresh

    async def test_retry_keeps_urgent_priority(self, queue, make_document):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id, priority=JobPriority.URGENT)
        await queue.claim(job_id)
        await queue.fail(job_id, doc.id, "timeout")

        new_job_id = await queue.retry(job_id)

        assert (await queue.get_status(new_job_id)).priority is JobPriority.URGENT

    async def test_retry_of_non_failed_job(self, queue, make_document):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        with pytest.raises(InvalidState):
            await queue.retry(job_id)

    async def test_retry_unknown_job(self, queue):
        with pytest.raises(JobNotFound):
            await queue.retry(uuid.uuid4())


# ─────────────────────────────────────────────────────────────────────────────
# Read side
# ─────────────────────────────────────────────────────────────────────────────

class TestReadSide:

    async def test_status_lists_and_stats(self, queue, make_document):
        queued = await queue.enqueue((await make_document()).id)
        failed_doc = await make_document()
        failed = await queue.enqueue(failed_doc.id)
        await queue.claim(failed)
        await queue.fail(failed, failed_doc.id, "timeout", failure_kind=FailureKind.TIMEOUT)

        status = await queue.get_status(queued)
        assert status.state is JobState.CREATED
        assert await queue.get_status(uuid.uuid4()) is None

        assert [j.id for j in await queue.list_active()] == [queued]
        assert [j.id for j in await queue.list_failed()] == [failed]

        stats = await queue.get_stats()
        assert stats.counts[JobState.CREATED] == 1
        assert stats.counts[JobState.FAILED] == 1
        assert stats.counts[JobState.ACTIVE] == 0
        assert stats.paused is False

    async def test_get_document_unknown(self, queue):
        with pytest.raises(DocumentNotFound):
            await queue.get_document(uuid.uuid4())


# ─────────────────────────────────────────────────────────────────────────────
# Maintenance
# ─────────────────────────────────────────────────────────────────────────────

class TestMaintenance:

    async def test_stale_active_jobs_fail_with_timeout(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)

        assert await queue.fail_stale_jobs(timedelta(seconds=-1)) == 1

        job = await _load(session_factory, Job, job_id)
        stored = await _load(session_factory, Document, doc.id)
        assert job.state is JobState.FAILED
        assert stored.status is DocumentStatus.FAILED
        assert stored.processing_message == "timeout"

    async def test_recent_active_jobs_are_left_alone(self, queue, make_document):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)
        assert await queue.fail_stale_jobs(timedelta(hours=1)) == 0

    async def test_stale_lease_outlives_job_timeout(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)
        lease = timedelta(seconds=settings.job_lease_seconds)
        assert lease > timedelta(seconds=settings.job_timeout_seconds)

        # Still inside the worker's own timeout budget plus download time
        await _backdate(session_factory, job_id, started_at=timedelta(seconds=settings.job_timeout_seconds + 5))
        assert await queue.fail_stale_jobs(lease) == 0

        await _backdate(session_factory, job_id, started_at=lease + timedelta(seconds=5))
        assert await queue.fail_stale_jobs(lease) == 1

    async def test_prune_finished_jobs(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.cancel(job_id)
        live = await queue.enqueue(doc.id)

        assert await queue.prune_finished_jobs(timedelta(seconds=-1)) == 1
        assert await _load(session_factory, Job, job_id) is None
        assert await _load(session_factory, Job, live) is not None


# ─────────────────────────────────────────────────────────────────────────────
# Quarantine
# ─────────────────────────────────────────────────────────────────────────────

class TestQuarantine:

    async def test_quarantine_cancels_running_job(self, queue, make_document, session_factory):
        doc = await make_document()
        job_id = await queue.enqueue(doc.id)
        await queue.claim(job_id)

        held = await queue.quarantine(doc.id, "manual review")

        assert held.status is DocumentStatus.QUARANTINE
        assert held.processing_message == "manual review"
        job = await _load(session_factory, Job, job_id)
        assert job.state is JobState.CANCELLED
        assert not await queue.complete(job_id, doc.id, {}, confidence=1.0)
        assert "document.quarantined" in await _actions(session_factory)

    async def test_release_returns_to_uploaded(self, queue, make_document):
        doc = await make_document()
        await queue.quarantine(doc.id, "hold")

        released = await queue.release(doc.id)

        assert released.status is DocumentStatus.UPLOADED
        assert released.queue_status is None
        assert await queue.enqueue(doc.id) is not None

    async def test_processed_document_cannot_be_quarantined(self, queue, make_document):
        doc = await make_document(status=DocumentStatus.PROCESSED)
        with pytest.raises(InvalidTransition):
            await queue.quarantine(doc.id, "hold")

    async def test_release_requires_quarantine(self, queue, make_document):
        doc = await make_document()
        with pytest.raises(InvalidTransition):
            await queue.release(doc.id)
