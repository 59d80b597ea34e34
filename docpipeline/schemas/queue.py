"""
Queue operator API schemas.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from docpipeline.schemas.documents import JobPriority, JobState


class JobStatus(BaseModel):
    """Snapshot of one job row, returned by QueueManager.get_status/list_*."""
    model_config = ConfigDict(from_attributes=True)

    id:            UUID
    document_id:   UUID
    job_type:      str
    state:         JobState
    priority:      JobPriority = JobPriority.NORMAL
    attempts:      int = 0
    last_error:    str | None = None
    retried_from:  UUID | None = None
    created_at:    datetime | None = None
    dispatched_at: datetime | None = None
    started_at:    datetime | None = None
    finished_at:   datetime | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def _priority_from_rank(cls, value):
        # jobs.priority holds the integer rank
        if isinstance(value, int):
            return JobPriority.from_rank(value)
        return value


class EnqueueRequest(BaseModel):
    document_id: UUID
    priority:    JobPriority = JobPriority.NORMAL


class EnqueueResponse(BaseModel):
    job_id:      UUID
    document_id: UUID
    dispatched:  bool = Field(..., description="False while the queue is paused or the broker publish failed")


class CancelResponse(BaseModel):
    cancelled: int = Field(..., ge=0, description="Jobs moved to cancelled by this call")


class RetryResponse(BaseModel):
    job_id:       UUID
    retried_from: UUID


class PauseResponse(BaseModel):
    paused: bool


class QueueStats(BaseModel):
    paused: bool
    counts: dict[JobState, int] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())
