"""
SQLAlchemy ORM Models — Documents, Jobs, Queue Settings & Audit Logs

Using SQLAlchemy 2.x mapped classes for full async support. Column types are
the generic ones (Uuid, JSON with a JSONB variant) so the same models run on
PostgreSQL in production and SQLite in the test suite.

One live job per document:
  jobs carries a partial UNIQUE index on document_id restricted to the live
  states (created, active). QueueManager.enqueue checks first; the index is
  the final guard against a racing duplicate enqueue.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from docpipeline.schemas.documents import (
    DocumentCategory,
    DocumentStatus,
    JobState,
    QueueStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type, length: int = 32) -> Enum:
    """Persist enum values (not member names) as plain strings."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


JSONType = JSON().with_variant(JSONB(), "postgresql")

_LIVE_JOB_PREDICATE = text("state IN ('created', 'active')")


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → OCR → structured payload.

    Owned by the pipeline once a job is enqueued: only the job referenced by
    job_id, or an explicit operator action, may write the processing_* fields.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "processing_progress >= 0 AND processing_progress <= 100",
            name="documents_progress_range",
        ),
        Index("idx_documents_owner_id", "owner_id"),
        Index("idx_documents_batch_id", "batch_id"),
        Index("idx_documents_status",   "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Uploader; access control lives in the gateway
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original filename provided by the client",
    )
    storage_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object key of the raw upload in the document bucket",
    )
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    media_type: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="application/octet-stream",
        comment="Declared MIME type; re-sniffed from magic bytes before parsing",
    )
    category: Mapped[DocumentCategory] = mapped_column(
        _enum_column(DocumentCategory),
        nullable=False,
        default=DocumentCategory.OTHER,
    )
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # State machine
    status: Mapped[DocumentStatus] = mapped_column(
        _enum_column(DocumentStatus),
        nullable=False,
        default=DocumentStatus.UPLOADED,
    )
    processing_stage:    Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    processing_progress: Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    processing_message:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Last job for this document; cleared when that job is cancelled
    queue_status: Mapped[Optional[QueueStatus]] = mapped_column(
        _enum_column(QueueStatus),
        nullable=True,
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # OCR result (see processing.orchestrator.OcrResult.to_payload)
    ocr_payload:    Mapped[Optional[dict]]  = mapped_column(JSONType, nullable=True)
    ocr_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )
    processing_started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} status={self.status} "
            f"job={self.job_id} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Job model — jobs
# ---------------------------------------------------------------------------

class Job(Base):
    """
    One durable unit of OCR work.

    State is monotonic: created → active → {completed, failed}, and
    created|active → cancelled. Retry inserts a new row with retried_from set.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index(
            "uq_jobs_live_document",
            "document_id",
            unique=True,
            postgresql_where=_LIVE_JOB_PREDICATE,
            sqlite_where=_LIVE_JOB_PREDICATE,
        ),
        Index("idx_jobs_state_priority_created", "state", "priority", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, default="ocr")
    state: Mapped[JobState] = mapped_column(
        _enum_column(JobState),
        nullable=False,
        default=JobState.CREATED,
    )
    # JobPriority rank; claim() takes the highest first, then the oldest
    priority:   Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    attempts:   Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retried_from: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    # Last successful publish to the broker; NULL = never dispatched
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Job id={self.id} doc={self.document_id} state={self.state}>"


# ---------------------------------------------------------------------------
# QueueSettings — single persisted row holding the global pause flag
# ---------------------------------------------------------------------------

class QueueSettings(Base):
    __tablename__ = "queue_settings"

    id:     Mapped[int]  = mapped_column(Integer, primary_key=True, default=1)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


# ---------------------------------------------------------------------------
# AuditLog model — audit_logs
# ---------------------------------------------------------------------------

class AuditLog(Base):
    """
    Append-only trail of operator actions and terminal processing outcomes.
    Written in the same transaction as the change it records.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_resource",   "resource"),
        Index("idx_audit_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    # What happened
    action: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="e.g. job.enqueued, job.cancelled, queue.paused, document.quarantined",
    )
    resource: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="e.g. document:<uuid> or job:<uuid>",
    )
    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} action={self.action!r} success={self.success}>"
