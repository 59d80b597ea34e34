"""
Status Stream Service

Watches a set of documents (explicit ids and/or an upload batch) and yields
StatusEvent objects:

  snapshot   immediately, every watched document
  update     each tick, only documents whose payload changed (skipped if none)
  heartbeat  idle tick with nothing changed, only when heartbeat=True
  done       once every watched document is PROCESSED or FAILED
  error      NO_DOCUMENTS       nothing resolved — stream ends
             FETCH_FAILED       database read failed — stream continues
             STREAM_EXPIRED     max lifetime reached — client reconnects

subscribe() is transport-agnostic: the SSE route serializes the events, the
polling route calls snapshot() once per request. Client disconnect is the
transport's concern (the SSE adapter stops iterating).
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import AsyncIterator, Iterable

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipeline.core.config import settings
from docpipeline.models.documents import Document
from docpipeline.schemas.documents import (
    DocumentStatus,
    DocumentStatusPayload,
    StatusEvent,
    StatusSnapshotResponse,
)

logger = logging.getLogger(__name__)


def _all_terminal(docs: Iterable[DocumentStatusPayload]) -> bool:
    return all(DocumentStatus(d.status).is_terminal for d in docs)


class StatusStreamService:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        interval: float | None = None,
        max_lifetime: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval if interval is not None else settings.stream_interval_seconds
        self._max_lifetime = (
            max_lifetime if max_lifetime is not None else settings.stream_max_lifetime_seconds
        )

    async def _fetch(
        self,
        document_ids: list[uuid.UUID] | None,
        batch_id: uuid.UUID | None,
    ) -> list[DocumentStatusPayload]:
        conditions = []
        if document_ids:
            conditions.append(Document.id.in_(document_ids))
        if batch_id is not None:
            conditions.append(Document.batch_id == batch_id)
        if not conditions:
            return []

        async with self._session_factory() as session:
            docs = await session.scalars(
                select(Document).where(or_(*conditions)).order_by(Document.created_at, Document.id)
            )
            return [DocumentStatusPayload.from_document(doc) for doc in docs]

    async def snapshot(
        self,
        document_ids: list[uuid.UUID] | None = None,
        batch_id: uuid.UUID | None = None,
    ) -> StatusSnapshotResponse:
        """Polling fallback — one read, same payload as a snapshot event."""
        docs = await self._fetch(document_ids, batch_id)
        return StatusSnapshotResponse(
            docs=docs,
            batch_id=batch_id,
            done=bool(docs) and _all_terminal(docs),
        )

    async def subscribe(
        self,
        document_ids: list[uuid.UUID] | None = None,
        batch_id: uuid.UUID | None = None,
        *,
        heartbeat: bool = False,
    ) -> AsyncIterator[StatusEvent]:
        deadline = time.monotonic() + self._max_lifetime
        last: dict[uuid.UUID, DocumentStatusPayload] | None = None

        logger.info(
            "Status stream opened | ids=%d batch=%s",
            len(document_ids or []), batch_id,
        )
        while True:
            try:
                docs = await self._fetch(document_ids, batch_id)
            except (SQLAlchemyError, OSError) as exc:
                logger.warning("Status stream fetch failed | batch=%s error=%s", batch_id, exc)
                yield StatusEvent(
                    type="error",
                    batch_id=batch_id,
                    error_code="FETCH_FAILED",
                    message="Status temporarily unavailable",
                )
            else:
                if last is None:
                    if not docs:
                        yield StatusEvent(
                            type="error",
                            batch_id=batch_id,
                            error_code="NO_DOCUMENTS",
                            message="No documents matched the request",
                        )
                        return
                    yield StatusEvent(type="snapshot", docs=docs, batch_id=batch_id)
                else:
                    changed = [d for d in docs if last.get(d.id) != d]
                    if changed:
                        yield StatusEvent(type="update", docs=changed, batch_id=batch_id)
                    elif heartbeat:
                        yield StatusEvent(type="heartbeat", batch_id=batch_id)
                last = {d.id: d for d in docs}

                if _all_terminal(docs):
                    yield StatusEvent(type="done", docs=docs, batch_id=batch_id)
                    logger.info("Status stream done | batch=%s docs=%d", batch_id, len(docs))
                    return

            if time.monotonic() >= deadline:
                yield StatusEvent(
                    type="error",
                    batch_id=batch_id,
                    error_code="STREAM_EXPIRED",
                    message="Stream lifetime exceeded, reconnect to continue",
                )
                return

            await asyncio.sleep(self._interval)
