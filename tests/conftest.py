"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : db_engine, session_factory, queue, dispatcher,
                    make_document, fake_provider, fake_postprocessor,
                    fake_storage, app, async_client

Environment strategy:
  - Every test gets its own SQLite database file (aiosqlite) under tmp_path;
    the schema is created from the ORM metadata, no migrations needed.
  - No broker: the QueueManager receives a FakeDispatcher that records ids.
  - No AWS / OpenAI / Tesseract: OCR providers and the post-processor are
    in-memory fakes implementing the same interfaces.

How to run:
  pytest                                  # all tests
  pytest -m unit                          # unit tests only
  pytest -m integration                   # HTTP tests against the ASGI app
  pytest tests/unit/test_orchestrator.py  # single file
"""

from __future__ import annotations

import asyncio
import os
import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any docpipeline imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./docpipeline-test.db")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("TEXTRACT_ENABLED", "false")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("APP_ENV", "test")

from docpipeline.db.session import create_engine_for, create_session_factory, session_scope  # noqa: E402
from docpipeline.models.documents import Base, Document  # noqa: E402
from docpipeline.pipeline.queue import QueueManager  # noqa: E402
from docpipeline.processing.ocr import OcrProvider, ProviderExtraction  # noqa: E402
from docpipeline.processing.parsers import DocumentFormat  # noqa: E402
from docpipeline.processing.postprocess import PostProcessResult  # noqa: E402
from docpipeline.schemas.documents import DocumentCategory, DocumentStatus, StepKind  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


# ─────────────────────────────────────────────────────────────────────────────
# Queue
# ─────────────────────────────────────────────────────────────────────────────

class FakeDispatcher:
    """Records dispatched job ids; set `fail=True` to simulate a broker outage."""

    def __init__(self) -> None:
        self.sent: list[uuid.UUID] = []
        self.fail = False

    async def dispatch(self, job_id: uuid.UUID) -> None:
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.sent.append(job_id)


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest_asyncio.fixture
async def queue(session_factory, dispatcher) -> AsyncGenerator[QueueManager, None]:
    manager = QueueManager(session_factory, dispatcher=dispatcher)
    await manager.open()
    yield manager
    await manager.close()


@pytest.fixture
def make_document(session_factory):
    """Factory: insert a Document row and return it (detached, attributes loaded)."""

    async def _make(
        *,
        status: DocumentStatus = DocumentStatus.UPLOADED,
        category: DocumentCategory = DocumentCategory.OTHER,
        filename: str = "waybill.txt",
        media_type: str = "text/plain",
        storage_key: str | None = None,
        batch_id: uuid.UUID | None = None,
        **extra,
    ) -> Document:
        doc_id = extra.pop("id", None) or uuid.uuid4()
        doc = Document(
            id=doc_id,
            owner_id=uuid.uuid4(),
            filename=filename,
            storage_key=storage_key or f"documents/{doc_id}/{filename}",
            size_bytes=0,
            media_type=media_type,
            category=category,
            batch_id=batch_id,
            status=status,
            processing_progress=100 if status is DocumentStatus.PROCESSED else 0,
            retry_count=0,
            **extra,
        )
        async with session_scope(session_factory) as session:
            session.add(doc)
        return doc

    return _make


# ─────────────────────────────────────────────────────────────────────────────
# OCR fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeProvider(OcrProvider):
    """
    Scripted OcrProvider. `errors` are raised one per call before falling
    back to the scripted text, so ["unavailable", None] fails once then succeeds.
    """

    def __init__(
        self,
        name: str,
        *,
        text: str = "",
        confidence: float = 0.0,
        kind: StepKind = StepKind.LOCAL_OCR,
        cost: float = 0.0,
        delay: float = 0.0,
        timeout_seconds: float = 5.0,
        errors: list[Exception] | None = None,
        configured: bool = True,
        formats: frozenset[DocumentFormat] | None = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.cost = cost
        self.timeout_seconds = timeout_seconds
        self.text = text
        self.confidence = confidence
        self.delay = delay
        self.errors = list(errors or [])
        self.configured = configured
        self.formats = formats
        self.calls = 0

    def supports(self, fmt: DocumentFormat) -> bool:
        if self.formats is not None:
            return fmt in self.formats
        return super().supports(fmt)

    def is_configured(self) -> bool:
        return self.configured

    async def attempt(self, data: bytes, fmt: DocumentFormat) -> ProviderExtraction:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return ProviderExtraction(text=self.text, confidence=self.confidence, provider=self.name)


class FakePostProcessor:
    """Stands in for GenerativePostProcessor."""

    name = "fake-llm"
    kind = StepKind.POSTPROCESS
    cost = 2.0

    def __init__(
        self,
        fields: dict | None = None,
        confidence: float = 0.9,
        *,
        configured: bool = True,
        error: Exception | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.fields = fields or {}
        self.confidence = confidence
        self.configured = configured
        self.error = error
        self.timeout_seconds = timeout_seconds
        self.calls = 0

    def is_configured(self) -> bool:
        return self.configured

    async def reconcile(self, text, category, extraction) -> PostProcessResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return PostProcessResult(fields=dict(self.fields), confidence=self.confidence, provider=self.name)


@pytest.fixture
def fake_provider():
    return FakeProvider


@pytest.fixture
def fake_postprocessor():
    return FakePostProcessor


@pytest.fixture
def disabled_postprocessor() -> FakePostProcessor:
    return FakePostProcessor(configured=False)


# ─────────────────────────────────────────────────────────────────────────────
# Storage
# ─────────────────────────────────────────────────────────────────────────────

class FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    def put(self, key: str, data: bytes) -> None:
        self.objects[key] = data

    async def get_bytes(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise FileNotFoundError(key) from None


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


# ─────────────────────────────────────────────────────────────────────────────
# Sample documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def waybill_text() -> str:
    return (
        "Путевой лист № 17\n"
        "Маршрут: Москва — Тверь\n"
        "Пробег 180 км\n"
        "Расход топлива 54 л\n"
        "Топливо: ДТ\n"
        "Автомобиль: КАМАЗ 5490\n"
    )


@pytest.fixture
def png_bytes() -> bytes:
    """PNG signature followed by filler; only the magic bytes matter to the fakes."""
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def corrupted_pdf_bytes() -> bytes:
    return b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\nthis is not a pdf body\n"


# ─────────────────────────────────────────────────────────────────────────────
# HTTP client — ASGI app with the test database and fake dispatcher
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app(session_factory, queue):
    from docpipeline.main import create_app
    from docpipeline.streaming.status_stream import StatusStreamService

    return create_app(
        session_factory=session_factory,
        queue_manager=queue,
        status_stream=StatusStreamService(session_factory, interval=0.01, max_lifetime=1.0),
    )


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
