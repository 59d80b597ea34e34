"""
Document Status API Router
/api/v1/documents

  GET  /{document_id}/status       status + OCR summary
  POST /{document_id}/quarantine   operator hold (cancels any live job)
  POST /{document_id}/release      quarantine → UPLOADED
  GET  /progress?ids=..&batch_id=..            Server-Sent Events
  GET  /progress?ids=..&batch_id=..&mode=poll  JSON snapshot (polling fallback)

SSE stream format:
  event: snapshot | update | done | error
  data: {"type": ..., "docs": [{id, status, progress, stage, message,
         updated_at, job_id, queue_status}], "batch_id": ..., ...}
  : keepalive            (comment line on idle ticks)

The stream closes after `done`, after an error that ends the subscription,
on client disconnect, or when its lifetime expires (client reconnects).
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from docpipeline.api.dependencies import Queue, StatusStream
from docpipeline.schemas.documents import (
    DocumentDetailResponse,
    DocumentStatus,
    DocumentStatusPayload,
    ErrorResponse,
    PipelineErrors,
    QuarantineRequest,
    StatusSnapshotResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)


class ProgressMode(str, Enum):
    SSE  = "sse"
    POLL = "poll"


# ---------------------------------------------------------------------------
# GET /documents/progress  — SSE stream or polling snapshot
# Declared before /{document_id}/... so "progress" is never parsed as an id.
# ---------------------------------------------------------------------------

@router.get(
    "/progress",
    summary="Live processing progress for documents or an upload batch",
    description=(
        "Server-Sent Events by default (events: snapshot, update, done, error). "
        "mode=poll returns one JSON snapshot with the same document payload."
    ),
    responses={
        200: {"model": StatusSnapshotResponse, "description": "Snapshot (mode=poll) or event stream"},
        400: {"model": ErrorResponse, "description": "Neither ids nor batch_id given"},
    },
)
async def document_progress(
    request:  Request,
    stream:   StatusStream,
    ids:      Optional[list[UUID]] = Query(None, description="Document ids (repeatable)"),
    batch_id: Optional[UUID]       = Query(None),
    mode:     ProgressMode         = Query(ProgressMode.SSE),
):
    if not ids and batch_id is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=PipelineErrors.no_documents_selected().model_dump(mode="json"),
        )

    if mode is ProgressMode.POLL:
        return await stream.snapshot(ids, batch_id)

    async def event_generator() -> AsyncGenerator[str, None]:
        events = stream.subscribe(ids, batch_id, heartbeat=True)
        try:
            async for event in events:
                # Respect client disconnection; heartbeats bring us here every tick
                if await request.is_disconnected():
                    logger.debug("SSE client disconnected | batch=%s", batch_id)
                    break
                if event.type == "heartbeat":
                    # Keepalive comment so proxies do not close an idle connection
                    yield ": keepalive\n\n"
                    continue
                yield _sse_event(event.type, event.model_dump(mode="json"))
        finally:
            await events.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control":     "no-cache",
            "Connection":        "keep-alive",
            "X-Accel-Buffering": "no",  # disable nginx buffering for SSE
        },
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentDetailResponse,
    summary="Poll processing status",
    responses={404: {"model": ErrorResponse}},
)
async def get_document_status(document_id: UUID, queue: Queue) -> DocumentDetailResponse:
    doc = await queue.get_document(document_id)
    payload = doc.ocr_payload or {}
    return DocumentDetailResponse(
        **DocumentStatusPayload.from_document(doc).model_dump(),
        filename=doc.filename,
        category=doc.category,
        retry_count=doc.retry_count,
        confidence=doc.ocr_confidence,
        provider=payload.get("provider"),
        retryable=DocumentStatus(doc.status) is DocumentStatus.FAILED,
    )


# ---------------------------------------------------------------------------
# Quarantine / release
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/quarantine",
    response_model=DocumentStatusPayload,
    summary="Hold a document outside the automatic flow",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def quarantine_document(
    document_id: UUID,
    body: QuarantineRequest,
    queue: Queue,
) -> DocumentStatusPayload:
    doc = await queue.quarantine(document_id, body.reason)
    return DocumentStatusPayload.from_document(doc)


@router.post(
    "/{document_id}/release",
    response_model=DocumentStatusPayload,
    summary="Release a quarantined document back to UPLOADED",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def release_document(document_id: UUID, queue: Queue) -> DocumentStatusPayload:
    doc = await queue.release(document_id)
    return DocumentStatusPayload.from_document(doc)


# ---------------------------------------------------------------------------
# SSE serialisation helper
# ---------------------------------------------------------------------------

def _sse_event(event: str, data: dict) -> str:
    """
    Format::
        event: <event>\\n
        data: <json>\\n
        \\n
    """
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"
