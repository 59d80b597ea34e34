"""
Queue Operator API
/api/v1/queue

  POST /jobs                          enqueue a document (optional priority) → 202
  POST /jobs/{job_id}/cancel          cancel one job (0 = no-op)
  POST /jobs/{job_id}/retry           re-run a failed job           → 202
  POST /documents/{document_id}/cancel  cancel every live job of a document
  POST /batches/{batch_id}/cancel      cancel every live job of an upload batch
  POST /pause | /resume               global dispatch switch
  GET  /jobs/{job_id}                 job snapshot
  GET  /jobs?state=active|failed&limit=N
  GET  /stats                         counts per state + paused flag

Errors (see main.py handlers): 404 DOCUMENT_NOT_FOUND / JOB_NOT_FOUND,
409 ALREADY_QUEUED / INVALID_STATE / INVALID_TRANSITION, 422 validation.
"""

from __future__ import annotations

import logging
from enum import Enum
from uuid import UUID

from fastapi import APIRouter, Query, status

from docpipeline.api.dependencies import Queue
from docpipeline.core.exceptions import JobNotFound
from docpipeline.schemas.documents import ErrorResponse
from docpipeline.schemas.queue import (
    CancelResponse,
    EnqueueRequest,
    EnqueueResponse,
    JobStatus,
    PauseResponse,
    QueueStats,
    RetryResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/queue",
    tags=["Queue"],
)

_CONFLICT = {409: {"model": ErrorResponse, "description": "Already queued or invalid state"}}
_NOT_FOUND = {404: {"model": ErrorResponse, "description": "Unknown document or job"}}


class JobListFilter(str, Enum):
    ACTIVE = "active"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Enqueue / cancel / retry
# ---------------------------------------------------------------------------

@router.post(
    "/jobs",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a document for OCR",
    responses={**_NOT_FOUND, **_CONFLICT},
)
async def enqueue_job(body: EnqueueRequest, queue: Queue) -> EnqueueResponse:
    result = await queue.submit(body.document_id, body.priority)
    return EnqueueResponse(
        job_id=result.job_id,
        document_id=body.document_id,
        dispatched=result.dispatched,
    )


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a job",
    description="Returns cancelled=0 when the job is unknown or already finished.",
)
async def cancel_job(job_id: UUID, queue: Queue) -> CancelResponse:
    return CancelResponse(cancelled=await queue.cancel(job_id))


@router.post(
    "/jobs/{job_id}/retry",
    response_model=RetryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed job",
    responses={**_NOT_FOUND, **_CONFLICT},
)
async def retry_job(job_id: UUID, queue: Queue) -> RetryResponse:
    new_job_id = await queue.retry(job_id)
    return RetryResponse(job_id=new_job_id, retried_from=job_id)


@router.post(
    "/documents/{document_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel every live job of a document",
)
async def cancel_document_jobs(document_id: UUID, queue: Queue) -> CancelResponse:
    return CancelResponse(cancelled=await queue.cancel_by_document(document_id))


@router.post(
    "/batches/{batch_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel every live job of an upload batch",
)
async def cancel_batch_jobs(batch_id: UUID, queue: Queue) -> CancelResponse:
    return CancelResponse(cancelled=await queue.cancel_by_batch(batch_id))


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------

@router.post("/pause", response_model=PauseResponse, summary="Stop dispatching and claiming jobs")
async def pause_queue(queue: Queue) -> PauseResponse:
    await queue.pause_all()
    return PauseResponse(paused=True)


@router.post("/resume", response_model=PauseResponse, summary="Resume and dispatch pending jobs")
async def resume_queue(queue: Queue) -> PauseResponse:
    await queue.resume_all()
    return PauseResponse(paused=False)


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

@router.get(
    "/jobs/{job_id}",
    response_model=JobStatus,
    summary="Job status",
    responses=_NOT_FOUND,
)
async def get_job(job_id: UUID, queue: Queue) -> JobStatus:
    job = await queue.get_status(job_id)
    if job is None:
        raise JobNotFound(f"Job {job_id} not found", job_id=job_id)
    return job


@router.get("/jobs", response_model=list[JobStatus], summary="List active or failed jobs, newest first")
async def list_jobs(
    queue: Queue,
    state: JobListFilter = Query(JobListFilter.ACTIVE),
    limit: int = Query(50, ge=1, le=500),
) -> list[JobStatus]:
    if state is JobListFilter.FAILED:
        return await queue.list_failed(limit)
    return await queue.list_active(limit)


@router.get("/stats", response_model=QueueStats, summary="Job counts per state")
async def queue_stats(queue: Queue) -> QueueStats:
    return await queue.get_stats()
