"""
Document State Machine

The only code path that writes Document.status. Callers hold the row (and,
for workers, the ownership token) before calling in; this module mutates the
in-memory ORM object and leaves flushing to the caller's transaction.

    UPLOADED   → PROCESSING | FAILED | QUARANTINE
    PROCESSING → PROCESSED | FAILED
    PROCESSED  → PROCESSING             (re-processing only)
    FAILED     → PROCESSING | QUARANTINE
    QUARANTINE → UPLOADED               (operator release)

Cancellation is not an edge of this table: revoke() is the queue's explicit
"job withdrawn" reset back to UPLOADED.
"""

from __future__ import annotations

import logging

from docpipeline.core.exceptions import InvalidState, InvalidTransition
from docpipeline.models.documents import Document, utcnow
from docpipeline.schemas.documents import DocumentStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.UPLOADED: frozenset({
        DocumentStatus.PROCESSING,
        DocumentStatus.FAILED,
        DocumentStatus.QUARANTINE,
    }),
    DocumentStatus.PROCESSING: frozenset({
        DocumentStatus.PROCESSED,
        DocumentStatus.FAILED,
    }),
    DocumentStatus.PROCESSED: frozenset({
        DocumentStatus.PROCESSING,
    }),
    DocumentStatus.FAILED: frozenset({
        DocumentStatus.PROCESSING,
        DocumentStatus.QUARANTINE,
    }),
    DocumentStatus.QUARANTINE: frozenset({
        DocumentStatus.UPLOADED,
    }),
}

# Progress ceiling while a job is still running; 100 is reserved for PROCESSED.
MAX_IN_FLIGHT_PROGRESS = 99

QUARANTINE_STAGE = "quarantine"
CANCELLED_STAGE  = "cancelled"

_REVOCABLE = frozenset({
    DocumentStatus.UPLOADED,
    DocumentStatus.PROCESSING,
    DocumentStatus.FAILED,
})


def can_transition(current: DocumentStatus, target: DocumentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[DocumentStatus(current)]


def transition(
    doc: Document,
    target: DocumentStatus,
    *,
    message: str | None = None,
    stage: str | None = None,
) -> Document:
    """
    Move `doc` to `target`, applying the entry actions of the target state.

    Raises InvalidTransition (document untouched) for edges outside the table
    and ValueError when entering FAILED without a message.
    """
    current = DocumentStatus(doc.status)
    target = DocumentStatus(target)

    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    if target is DocumentStatus.FAILED and not (message and message.strip()):
        raise ValueError("Entering FAILED requires a processing message")

    now = utcnow()
    doc.status = target

    if target is DocumentStatus.PROCESSING:
        doc.processing_progress = 0
        doc.processing_started_at = now
        doc.processing_completed_at = None
        doc.processing_stage = stage or "starting"
        doc.processing_message = message

    elif target is DocumentStatus.PROCESSED:
        doc.processing_progress = 100
        doc.processing_completed_at = now
        doc.processing_stage = stage or "completed"
        doc.processing_message = message

    elif target is DocumentStatus.FAILED:
        doc.processing_progress = 0
        doc.processing_completed_at = now
        doc.processing_stage = stage or "failed"
        doc.processing_message = message

    elif target is DocumentStatus.QUARANTINE:
        doc.processing_stage = QUARANTINE_STAGE
        doc.processing_message = message

    elif target is DocumentStatus.UPLOADED:
        # Release from quarantine starts from a clean slate
        doc.processing_stage = None
        doc.processing_message = None
        doc.processing_progress = 0

    logger.info(
        "Document transition | doc=%s %s -> %s stage=%s",
        doc.id, current.value, target.value, doc.processing_stage,
    )
    return doc


def advance_progress(
    doc: Document,
    progress: int,
    *,
    stage: str | None = None,
    message: str | None = None,
) -> bool:
    """
    Raise processing_progress for a PROCESSING document.

    Lower values than the current one are ignored (monotonic within a job).
    Returns True when any field changed.
    """
    if DocumentStatus(doc.status) is not DocumentStatus.PROCESSING:
        raise InvalidState(
            f"Progress can only be reported while PROCESSING (status={doc.status})",
            document_id=doc.id,
        )

    changed = False
    capped = max(0, min(int(progress), MAX_IN_FLIGHT_PROGRESS))
    if capped > (doc.processing_progress or 0):
        doc.processing_progress = capped
        changed = True
    if stage is not None and stage != doc.processing_stage:
        doc.processing_stage = stage
        changed = True
    if message is not None and message != doc.processing_message:
        doc.processing_message = message
        changed = True
    return changed


def revoke(doc: Document) -> bool:
    """
    Reset a document whose job was cancelled back to UPLOADED.

    No-op (returns False) for PROCESSED or QUARANTINE documents, so a cancel
    that loses the race against completion never reverts a finished result.
    """
    current = DocumentStatus(doc.status)
    if current not in _REVOCABLE:
        return False

    doc.status = DocumentStatus.UPLOADED
    doc.processing_stage = CANCELLED_STAGE
    doc.processing_progress = 0
    doc.processing_message = None
    doc.processing_completed_at = None
    logger.info("Document revoked | doc=%s from=%s", doc.id, current.value)
    return True
