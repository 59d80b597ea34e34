"""
FastAPI Application — Entry Point

Emissions Document OCR Pipeline — operator and status API

Architecture:
  - All routes are versioned under /api/v1/
  - Shared services (QueueManager, StatusStreamService) are built once in the
    lifespan and injected via api.dependencies; create_app() accepts
    pre-built instances for tests and embedding
  - OCR runs in Celery workers (docpipeline.workers), never in this process
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID injection — X-Request-ID header on every response
  3. Gzip — compress responses > 1 KB
  4. Request logging — structured log per request with latency

Authentication is handled by the gateway in front of this service.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipeline.api.v1.documents import router as documents_router
from docpipeline.api.v1.queue import router as queue_router
from docpipeline.core.config import settings
from docpipeline.core.exceptions import (
    AlreadyQueued,
    DocumentNotFound,
    InvalidState,
    InvalidTransition,
    JobNotFound,
    PipelineError,
)
from docpipeline.db.session import check_db_health
from docpipeline.pipeline.queue import CeleryTaskPublisher, QueueManager
from docpipeline.schemas.documents import ErrorDetail, ErrorResponse, PipelineErrors
from docpipeline.streaming.status_stream import StatusStreamService

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_STATUS_BY_ERROR: dict[type[PipelineError], int] = {
    DocumentNotFound:  status.HTTP_404_NOT_FOUND,
    JobNotFound:       status.HTTP_404_NOT_FOUND,
    AlreadyQueued:     status.HTTP_409_CONFLICT,
    InvalidState:      status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
}


def _status_for(exc: PipelineError) -> int:
    for error_type, code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: validate DB connectivity, build any services not injected into
    create_app(), open the queue.
    Shutdown: close the queue and dispose the engine we own.
    """
    logger.info("Starting OCR pipeline API | env=%s", settings.app_env)

    owns_engine = not hasattr(app.state, "queue_manager")
    if owns_engine:
        from docpipeline.db.session import AsyncSessionLocal

        db_health = await check_db_health()
        if db_health["status"] != "ok":
            logger.critical("Database health check failed at startup: %s", db_health)
            raise RuntimeError(f"DB unavailable: {db_health}")
        logger.info("Database: connected")

        app.state.queue_manager = QueueManager(AsyncSessionLocal, dispatcher=CeleryTaskPublisher())
        if not hasattr(app.state, "status_stream"):
            app.state.status_stream = StatusStreamService(AsyncSessionLocal)

    await app.state.queue_manager.open()
    logger.info("S3 bucket: %s", settings.s3_bucket)

    yield

    logger.info("Shutting down OCR pipeline API")
    await app.state.queue_manager.close()
    if owns_engine:
        from docpipeline.db.session import engine
        await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    queue_manager: QueueManager | None = None,
    status_stream: StatusStreamService | None = None,
) -> FastAPI:
    app = FastAPI(
        title="Emissions Document OCR Pipeline",
        description=(
            "Job queue, document state and live progress for the OCR pipeline "
            "that extracts emissions data from uploaded documents."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    if session_factory is not None:
        app.state.queue_manager = queue_manager or QueueManager(session_factory)
        app.state.status_stream = status_stream or StatusStreamService(session_factory)
    else:
        if queue_manager is not None:
            app.state.queue_manager = queue_manager
        if status_stream is not None:
            app.state.status_stream = status_stream

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order — last added = outermost)
    # ----------------------------------------------------------------

    # GZip compression for responses > 1 KB (event streams are not compressed)
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = ["*"] if settings.app_env == "development" else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        """Queue / state machine misuse → 404 or 409 with the error's code."""
        code = _status_for(exc)
        logger.info(
            "Request rejected | path=%s status=%d error_code=%s message=%s",
            request.url.path, code, exc.error_code, exc.message,
        )
        body = PipelineErrors.from_exception(exc, request.headers.get("X-Request-ID"))
        return JSONResponse(status_code=code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = PipelineErrors.internal_error(request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(queue_router,     prefix="/api/v1")
    app.include_router(documents_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "docpipeline-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docpipeline.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
