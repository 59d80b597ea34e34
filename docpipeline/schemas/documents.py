"""
Document Pipeline — Enums and Pydantic Schemas

Covers:
  - Closed enums for document status, queue status, job state and priority,
    category and OCR step kind (shared by the ORM models and the API layer)
  - Document status payload used by GET /documents/{id}/status and by every
    status stream event
  - Status stream event envelope (snapshot | update | done | error | heartbeat)
  - Structured error bodies (404, 409, 422, 500)

Design decisions:
  - All timestamps are ISO-8601 UTC strings.
  - Enum values are persisted as-is, so renaming a member is a migration.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Document state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: see docpipeline.pipeline.state_machine.ALLOWED_TRANSITIONS
    """
    UPLOADED   = "UPLOADED"     # stored, not yet picked up
    PROCESSING = "PROCESSING"   # a job owns the document
    PROCESSED  = "PROCESSED"    # OCR payload available for reporting
    FAILED     = "FAILED"       # classified failure in processing_message
    QUARANTINE = "QUARANTINE"   # operator hold, outside automatic flow

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.PROCESSED, DocumentStatus.FAILED)


class QueueStatus(str, Enum):
    """Mirror of the owning job's lifecycle on the document row."""
    QUEUED    = "QUEUED"
    ACTIVE    = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED    = "FAILED"
    CANCELLED = "CANCELLED"


class JobState(str, Enum):
    CREATED   = "created"
    ACTIVE    = "active"
    COMPLETED = "completed"
    FAILED    = "failed"
    CANCELLED = "cancelled"

    @property
    def is_live(self) -> bool:
        return self in (JobState.CREATED, JobState.ACTIVE)


LIVE_JOB_STATES: tuple[JobState, ...] = (JobState.CREATED, JobState.ACTIVE)


class JobPriority(str, Enum):
    """Claim order among `created` jobs. Persisted as an integer rank (jobs.priority)."""
    NORMAL = "normal"
    HIGH   = "high"      # retries
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self.value]

    @classmethod
    def from_rank(cls, rank: int) -> JobPriority:
        eligible = [p for p in cls if p.rank <= rank]
        return max(eligible, key=lambda p: p.rank) if eligible else cls.NORMAL


_PRIORITY_RANKS = {"normal": 0, "high": 5, "urgent": 10}


class DocumentCategory(str, Enum):
    """Domain classification driving structured field extraction."""
    PRODUCTION = "production"
    TRANSPORT  = "transport"
    ENERGY     = "energy"
    WASTE      = "waste"
    SUPPLIERS  = "suppliers"
    OTHER      = "other"


class StepKind(str, Enum):
    """Escalation level an OCR provenance step belongs to."""
    PARSER      = "parser"
    CLOUD_OCR   = "cloud_ocr"
    LOCAL_OCR   = "local_ocr"
    POSTPROCESS = "postprocess"


# ---------------------------------------------------------------------------
# Document status payload — GET /documents/{id}/status and stream events
# ---------------------------------------------------------------------------

class DocumentStatusPayload(BaseModel):
    """One document's client-visible processing state."""
    model_config = ConfigDict(from_attributes=True)

    id:           UUID
    status:       DocumentStatus
    progress:     int               = Field(0, ge=0, le=100)
    stage:        str | None        = None
    message:      str | None        = None
    updated_at:   datetime | None   = None
    job_id:       UUID | None       = None
    queue_status: QueueStatus | None = None

    @classmethod
    def from_document(cls, doc) -> "DocumentStatusPayload":
        return cls(
            id=doc.id,
            status=doc.status,
            progress=doc.processing_progress,
            stage=doc.processing_stage,
            message=doc.processing_message,
            updated_at=doc.updated_at,
            job_id=doc.job_id,
            queue_status=doc.queue_status,
        )


class DocumentDetailResponse(DocumentStatusPayload):
    """Status plus the OCR summary, returned by GET /documents/{id}/status."""
    filename:    str
    category:    DocumentCategory
    retry_count: int = 0
    confidence:  float | None = None
    provider:    str | None = None
    retryable:   bool = False


# ---------------------------------------------------------------------------
# Status stream events
# ---------------------------------------------------------------------------

StatusEventType = Literal["snapshot", "update", "done", "error", "heartbeat"]


class StatusEvent(BaseModel):
    """
    Emitted on the progress stream.
    event: <type>
    data: <json of this model>

    heartbeat marks an idle tick; the SSE adapter sends it as a comment.
    """
    type:       StatusEventType
    docs:       list[DocumentStatusPayload] = Field(default_factory=list)
    batch_id:   UUID | None = None
    message:    str | None  = None
    error_code: str | None  = None


class StatusSnapshotResponse(BaseModel):
    """Polling fallback — same shape as a snapshot event."""
    docs:     list[DocumentStatusPayload]
    batch_id: UUID | None = None
    done:     bool = False


class QuarantineRequest(BaseModel):
    reason: str = Field("operator hold", min_length=1, max_length=500)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class PipelineErrors:
    """Factories for every documented error case."""

    @staticmethod
    def from_exception(exc, request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=[
                ErrorDetail(field=key, message=str(value), code=exc.error_code)
                for key, value in exc.context.items()
                if value is not None
            ],
            request_id=request_id,
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )

    @staticmethod
    def no_documents_selected() -> ErrorResponse:
        return ErrorResponse(
            error_code="NO_DOCUMENTS_SELECTED",
            message="Provide either ids or batch_id.",
            details=[
                ErrorDetail(field="ids", message="At least one document id is required.", code="NO_DOCUMENTS_SELECTED")
            ],
        )


# ---------------------------------------------------------------------------
# HTTP status code → error code mapping (for OpenAPI documentation)
# ---------------------------------------------------------------------------

HTTP_ERROR_MAP: dict[int, str] = {
    400: "NO_DOCUMENTS_SELECTED",  # progress stream without ids or batch
    404: "DOCUMENT_NOT_FOUND",     # also JOB_NOT_FOUND
    409: "ALREADY_QUEUED",         # also INVALID_STATE, INVALID_TRANSITION
    422: "VALIDATION_ERROR",       # FastAPI Pydantic validation failure
    500: "INTERNAL_ERROR",         # unhandled exception
}
