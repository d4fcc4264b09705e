"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing for event intake and scheduler sweeps
- Beat schedule for the delay scheduler sweep
"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from app.config import get_settings
from core.logging_config import setup_logging

settings = get_settings()

celery_app = Celery(
    "crm_automation",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    timezone="UTC",
    enable_utc=True,

    task_routes={
        "worker.tasks.events.*": {"queue": "events"},
        "worker.tasks.scheduler.*": {"queue": "scheduler"},
        "worker.tasks.*": {"queue": "default"},
    },
    task_default_queue="default",

    result_expires=86400,

    # Action retries back off inside the task, so the limits cover the
    # full retry budget of a run segment
    task_soft_time_limit=300,
    task_time_limit=600,
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    beat_schedule={
        "sweep-due-runs": {
            "task": "worker.tasks.scheduler.sweep_due_runs",
            "schedule": float(settings.SCHEDULER_SWEEP_INTERVAL_SECONDS),
            "options": {"queue": "scheduler"},
        },
    },

    include=[
        "worker.tasks.events",
        "worker.tasks.scheduler",
    ],
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Replace Celery's log setup with the structlog pipeline."""
    setup_logging(process_name="worker")
