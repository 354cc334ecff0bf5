from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from tenantsync.celery_app import celery_app
from tenantsync.core import database
from tenantsync.services import billing  # noqa: F401  registers the subscription sync operations
from tenantsync.services.sync_workflow import SyncJob, SyncWorkflow


logger = logging.getLogger(__name__)


def _with_db_session() -> Session:
    return database.SessionLocal()


@celery_app.task(name="sync.run_entity_sync", acks_late=True)
def run_entity_sync(
    workflow_id: str,
    entity_type: str,
    entity_id: str,
    operation: str,
    payload: dict[str, Any],
    retry_count: int = 0,
    webhook_event: str | None = None,
) -> str:
    # Retry state travels in the arguments; a rescheduled attempt needs nothing else.
    job = SyncJob(
        workflow_id=workflow_id,
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        payload=payload or {},
        retry_count=retry_count,
        webhook_event=webhook_event,
    )
    db = _with_db_session()
    try:
        outcome = SyncWorkflow(db).run_attempt(job)
        logger.info("Sync %s attempt %s: %s", workflow_id, retry_count + 1, outcome)
        return outcome
    finally:
        db.close()
