"""
Celery Application Factory

Configures the Celery app for async OCR processing.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) as fallback for local dev.
Result backend: Redis (optional — job state is tracked in the jobs table).

Queue topology:
  ocr.process       — OCR jobs, one message per job id
  ocr.maintenance   — beat tasks: re-dispatch, stale-job reset, pruning
  system.health     — internal health-check tasks

Task payloads carry job ids only. Never pass raw file bytes through the
broker — workers load bytes from storage after claiming the job.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docpipeline.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

OCR_EXCHANGE = Exchange("ocr", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "ocr.process",
        exchange=OCR_EXCHANGE,
        routing_key="ocr.process",
        durable=True,
    ),
    Queue(
        "ocr.maintenance",
        exchange=OCR_EXCHANGE,
        routing_key="ocr.maintenance",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docpipeline.workers.tasks.process_job":          {"queue": "ocr.process"},
    "docpipeline.workers.tasks.dispatch_pending_jobs": {"queue": "ocr.maintenance"},
    "docpipeline.workers.tasks.fail_stale_jobs":      {"queue": "ocr.maintenance"},
    "docpipeline.workers.tasks.prune_finished_jobs":  {"queue": "ocr.maintenance"},
    "docpipeline.workers.tasks.health_check":         {"queue": "system.health"},
}


def _beat_schedule() -> dict:
    schedule = {
        "dispatch-pending-jobs-every-60s": {
            "task":     "docpipeline.workers.tasks.dispatch_pending_jobs",
            "schedule": 60,
            "options":  {"queue": "ocr.maintenance"},
        },
        "fail-stale-jobs-every-60s": {
            "task":     "docpipeline.workers.tasks.fail_stale_jobs",
            "schedule": 60,
            "options":  {"queue": "ocr.maintenance"},
        },
    }
    if settings.job_retention_days > 0:
        schedule["prune-finished-jobs-daily"] = {
            "task":     "docpipeline.workers.tasks.prune_finished_jobs",
            "schedule": 24 * 3600,
            "options":  {"queue": "ocr.maintenance"},
        }
    return schedule


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docpipeline")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="ocr.process",
        task_default_exchange="ocr",
        task_default_routing_key="ocr.process",

        # --- Reliability ---
        task_acks_late=True,         # ack only after task completes (redelivered on crash; claim() dedupes)
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one OCR job at a time per worker process

        # --- Timeouts ---
        # The job itself is bounded by job_timeout_seconds; these are backstops
        task_soft_time_limit=settings.job_timeout_seconds + 30,
        task_time_limit=settings.job_timeout_seconds + 60,

        # --- Result TTL ---
        result_expires=3600,   # 1 hour; job state lives in the database, not Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        beat_schedule=_beat_schedule(),

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers (PyMuPDF / Tesseract memory)
    )

    app.autodiscover_tasks(["docpipeline.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s job=%s",
        task_id, task.name, (kwargs or {}).get("job_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s job=%s",
        task_id, task.name, state, (kwargs or {}).get("job_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s job=%s error=%s",
        task_id, (kwargs or {}).get("job_id", "-"), exception,
        exc_info=True,
    )
