from __future__ import annotations

import logging

from celery import Celery

from tenantsync.core.config import settings


logger = logging.getLogger(__name__)

BROKER_CONFIGURED = bool(settings.CELERY_BROKER_URL)

celery_app = Celery(
    "tenantsync",
    include=["tenantsync.tasks.events", "tenantsync.tasks.sync"],
)

if BROKER_CONFIGURED:
    broker_url = settings.CELERY_BROKER_URL
else:
    broker_url = "memory://"
    logger.warning("CELERY_BROKER_URL is not configured; Celery will run in in-memory mode.")

celery_app.conf.update(
    broker_url=broker_url,
    result_backend=None,
    task_default_queue="tenantsync-events",
    task_serializer="json",
    accept_content=["json"],
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
    timezone="UTC",
    enable_utc=True,
)

celery_app.conf.beat_schedule = {
    "poll-identity-events": {
        "task": "events.poll_identity_events",
        "schedule": float(settings.EVENTS_POLL_INTERVAL_SECONDS),
    },
    "cleanup-processed-events": {
        "task": "events.cleanup_processed_events",
        "schedule": float(settings.PROCESSED_EVENTS_CLEANUP_INTERVAL_SECONDS),
    },
    # Dead letters are never swept automatically; resolving them needs a human.
}


def enqueue(task, *args, countdown: float | None = None, **kwargs):
    """
    Convenience helper so callers can enqueue tasks without caring
    whether the broker is configured. In tests/local dev we execute tasks inline.
    """
    if BROKER_CONFIGURED:
        return task.apply_async(args=args, kwargs=kwargs, countdown=countdown)
    logger.info("Celery broker not configured; running %s synchronously", task.name)
    return task.apply(args=args, kwargs=kwargs)
