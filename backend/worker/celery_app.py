"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing to the timeouts queue
- Serialization and timezone settings
- Beat schedule for the periodic timeout sweep
"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from app.config import get_settings
from core.logging_config import setup_logging

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "approval_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)


@celery_setup_logging.connect
def _configure_logging(**kwargs):
    setup_logging()


# Configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    task_routes={
        "worker.tasks.timeouts.*": {"queue": "timeouts"},
        "worker.tasks.*": {"queue": "default"},
    },

    # Default queue
    task_default_queue="default",

    # Sweep reports are only useful for a few hours
    result_expires=6 * 3600,

    # A sweep must finish while it still holds its execution leases
    task_soft_time_limit=max(settings.TIMEOUT_LEASE_SECONDS - 15, 15),
    task_time_limit=settings.TIMEOUT_LEASE_SECONDS,
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    # Retry
    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    beat_schedule={
        "sweep-workflow-timeouts": {
            "task": "worker.tasks.timeouts.sweep_timeouts",
            "schedule": float(settings.TIMEOUT_SWEEP_INTERVAL_SECONDS),
            "options": {"queue": "timeouts"},
        },
    },

    include=[
        "worker.tasks.timeouts",
    ],
)
