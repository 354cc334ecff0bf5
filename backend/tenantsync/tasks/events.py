from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from tenantsync.celery_app import celery_app
from tenantsync.core import database
from tenantsync.core.config import settings
from tenantsync.services.event_poller import EventPoller
from tenantsync.services.event_processor import EventProcessor
from tenantsync.services.ledger import IdempotencyLedger
from tenantsync.services.workos_client import get_identity_client


logger = logging.getLogger(__name__)


def _with_db_session() -> Session:
    return database.SessionLocal()


@celery_app.task(name="events.process_identity_event", acks_late=True)
def process_identity_event(event_id: str, event: dict[str, Any], source: str = "webhook") -> dict[str, Any]:
    db = _with_db_session()
    try:
        return EventProcessor(db).process(event_id, event, source).as_dict()
    finally:
        db.close()


@celery_app.task(name="events.poll_identity_events")
def poll_identity_events() -> dict[str, Any]:
    db = _with_db_session()
    try:
        result = EventPoller(db, get_identity_client()).poll()
        if result.errors:
            logger.warning("Event poll finished with %s error(s): %s", len(result.errors), result.errors[:5])
        return result.as_dict()
    finally:
        db.close()


@celery_app.task(name="events.cleanup_processed_events")
def cleanup_processed_events() -> int:
    db = _with_db_session()
    try:
        return IdempotencyLedger(db).cleanup_expired(
            settings.PROCESSED_EVENTS_RETENTION_DAYS,
            batch_size=settings.PROCESSED_EVENTS_CLEANUP_BATCH_SIZE,
        )
    finally:
        db.close()
