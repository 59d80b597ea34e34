"""
Database session management.

Flow:
  1. The QueueManager, the worker and the status stream receive a session
     factory (never a global) so tests and workers can bind their own engine.
  2. session_scope() opens a session and a transaction; the transaction
     commits on exit and rolls back on error.
  3. Row locking (SELECT ... FOR UPDATE [SKIP LOCKED]) is used by the queue on
     PostgreSQL. SQLite has no row locks, so SQLite engines open every
     transaction with BEGIN IMMEDIATE, which serializes writers database-wide.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docpipeline.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def create_engine_for(url: str, **overrides: Any) -> AsyncEngine:
    """Build an AsyncEngine with the pool settings appropriate for the dialect."""
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"timeout": 30}}
    else:
        kwargs = {
            "pool_size":     settings.db_pool_size,
            "max_overflow":  settings.db_max_overflow,
            "pool_pre_ping": True,    # detect stale connections before use
            "pool_recycle":  3600,    # recycle connections every hour
        }
    kwargs["echo"] = settings.db_echo_sql
    kwargs.update(overrides)

    new_engine = create_async_engine(url, **kwargs)
    if url.startswith("sqlite"):
        _use_immediate_transactions(new_engine)
    return new_engine


def _use_immediate_transactions(target: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so every SQLite transaction takes the write lock up front."""

    @event.listens_for(target.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine: AsyncEngine = create_engine_for(settings.database_url)

AsyncSessionLocal = create_session_factory(engine)


# ---------------------------------------------------------------------------
# Transaction scope
# ---------------------------------------------------------------------------

@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Session wrapped in a single transaction.

    Usage:
        async with session_scope(factory) as session:
            session.add(...)
        # committed here
    """
    async with (factory or AsyncSessionLocal)() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(bind: AsyncEngine | None = None) -> dict:
    """Ping the database; used by /ready endpoint."""
    try:
        async with (bind or engine).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
