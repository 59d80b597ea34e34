"""
Pipeline error taxonomy.

Two families:
  - Operator/programmer misuse (AlreadyQueued, InvalidState, InvalidTransition,
    DocumentNotFound, JobNotFound) — returned synchronously to the caller,
    never retried.
  - Document / provider failures (ProviderError subclasses, UnsupportedFormat,
    FileTooLarge, CorruptedFile, ExhaustedFallbackChain) — recovered inside the
    OCR orchestrator and surfaced only as a classified FailureKind.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    """Classified reason a document ended up FAILED."""
    CORRUPTED_FILE     = "corrupted_file"
    UNSUPPORTED_FORMAT = "unsupported_format"
    FILE_TOO_LARGE     = "file_too_large"
    PROVIDER_OUTAGE    = "provider_outage"
    TIMEOUT            = "timeout"

    @property
    def message(self) -> str:
        return _FAILURE_MESSAGES[self]


_FAILURE_MESSAGES: dict[FailureKind, str] = {
    FailureKind.CORRUPTED_FILE:     "file corrupted",
    FailureKind.UNSUPPORTED_FORMAT: "unsupported format",
    FailureKind.FILE_TOO_LARGE:     "file too large",
    FailureKind.PROVIDER_OUTAGE:    "provider outage — retry later",
    FailureKind.TIMEOUT:            "timeout",
}


class PipelineError(Exception):
    """Base class. `error_code` is the stable machine-readable code for APIs."""

    error_code: str = "PIPELINE_ERROR"

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.error_code)
        self.message = message or self.error_code
        self.context = context


# ---------------------------------------------------------------------------
# Queue / state machine misuse
# ---------------------------------------------------------------------------

class AlreadyQueued(PipelineError):
    error_code = "ALREADY_QUEUED"


class InvalidState(PipelineError):
    error_code = "INVALID_STATE"


class InvalidTransition(PipelineError):
    error_code = "INVALID_TRANSITION"

    def __init__(self, current: Any, target: Any) -> None:
        super().__init__(
            f"Transition {getattr(current, 'value', current)} -> "
            f"{getattr(target, 'value', target)} is not allowed",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class DocumentNotFound(PipelineError):
    error_code = "DOCUMENT_NOT_FOUND"


class JobNotFound(PipelineError):
    error_code = "JOB_NOT_FOUND"


# ---------------------------------------------------------------------------
# Document / provider failures
# ---------------------------------------------------------------------------

class DocumentFailure(PipelineError):
    """A failure attributable to the document or the providers, with a FailureKind."""

    failure_kind: FailureKind = FailureKind.CORRUPTED_FILE


class ProviderError(DocumentFailure):
    error_code = "PROVIDER_ERROR"
    failure_kind = FailureKind.PROVIDER_OUTAGE


class ProviderUnavailable(ProviderError):
    """Network / auth / throttling failure. Triggers fallback to the next level."""
    error_code = "PROVIDER_UNAVAILABLE"


class ProviderTimeout(ProviderError):
    """Bounded wait exceeded. Counts as unavailable, never as zero confidence."""
    error_code = "PROVIDER_TIMEOUT"
    failure_kind = FailureKind.TIMEOUT


class UnsupportedFormat(DocumentFailure):
    error_code = "UNSUPPORTED_FORMAT"
    failure_kind = FailureKind.UNSUPPORTED_FORMAT


class FileTooLarge(DocumentFailure):
    error_code = "FILE_TOO_LARGE"
    failure_kind = FailureKind.FILE_TOO_LARGE


class CorruptedFile(DocumentFailure):
    error_code = "CORRUPTED_FILE"
    failure_kind = FailureKind.CORRUPTED_FILE


class ExhaustedFallbackChain(DocumentFailure):
    """Every level failed. `failure_kind` carries the classified cause."""
    error_code = "EXHAUSTED_FALLBACK_CHAIN"

    def __init__(self, failure_kind: FailureKind, message: str = "") -> None:
        super().__init__(message or failure_kind.message)
        self.failure_kind = failure_kind
