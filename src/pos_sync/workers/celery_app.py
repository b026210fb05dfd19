"""
Celery application configuration for POS Sync.

This module configures Celery for:
- Queued sync runs triggered through the API
- Scheduled housekeeping tasks (Celery Beat)
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init
from kombu import Queue

from pos_sync.utils.config import get_config

_config = get_config()

celery_app = Celery(
    "pos_sync",
    broker=_config.broker_url,
    backend=_config.result_backend,
    include=["pos_sync.workers.tasks"]
)

celery_app.conf.update(
    # Task routing
    task_routes={
        "pos_sync.run_sync": {"queue": "sync"},
        "pos_sync.refresh_expiring_tokens": {"queue": "maintenance"},
        "pos_sync.abandon_expired_authorizations": {"queue": "maintenance"},
    },

    task_queues=(
        Queue("sync", routing_key="sync"),
        Queue("maintenance", routing_key="maintenance"),
        Queue("default", routing_key="default"),
    ),
    task_default_queue="default",
    task_default_routing_key="default",

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=3600,
    task_soft_time_limit=3300,
    worker_prefetch_multiplier=1,

    # Result settings
    result_expires=3600,

    # Serialization
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    timezone="UTC",
    enable_utc=True,

    beat_schedule={
        # Refresh tokens before a run has to
        "refresh-expiring-tokens": {
            "task": "pos_sync.refresh_expiring_tokens",
            "schedule": crontab(minute="*/2"),
            "options": {"queue": "maintenance"},
        },
        "abandon-expired-authorizations": {
            "task": "pos_sync.abandon_expired_authorizations",
            "schedule": crontab(minute="*/15"),
            "options": {"queue": "maintenance"},
        },
    },

    worker_max_tasks_per_child=1000,

    # Logging
    worker_hijack_root_logger=False,
)


@worker_process_init.connect
def init_worker(**kwargs):
    """Per-process logging and error tracking."""
    from pos_sync.monitoring.sentry_config import setup_sentry
    from pos_sync.utils.logger import setup_logging

    setup_logging()
    setup_sentry(environment=_config.environment)
