from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.orm import Session

from tenantsync.core.clock import utcnow
from tenantsync.models.sync import DeadLetterEntry, SyncEntityType
from tenantsync.services import sync_workflow
from tenantsync.services.directory import DirectoryService

logger = logging.getLogger(__name__)


class DeadLetterError(Exception):
    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class RetryAllResult:
    retried: int
    failed: int


class DeadLetterService:
    """Operator tooling. Nothing in the automated pipeline reads or resolves dead letters."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def list_entries(self, *, limit: int = 50, include_resolved: bool = False) -> list[DeadLetterEntry]:
        query = self.db.query(DeadLetterEntry)
        if not include_resolved:
            query = query.filter(DeadLetterEntry.resolved_at.is_(None))
        return query.order_by(DeadLetterEntry.created_at.desc(), DeadLetterEntry.id.desc()).limit(limit).all()

    def get(self, entry_id: int) -> DeadLetterEntry:
        entry = self.db.get(DeadLetterEntry, entry_id)
        if entry is None:
            raise DeadLetterError("Dead letter entry not found", status_code=404)
        return entry

    def retry(self, entry_id: int) -> str:
        """Re-run the original sync under a fresh workflow id, then close this entry."""
        entry = self.get(entry_id)
        if entry.resolved_at is not None:
            raise DeadLetterError("Dead letter entry is already resolved", status_code=409)
        if not entry.retryable:
            raise DeadLetterError("Dead letter entry is not retryable", status_code=409)

        context = entry.context or {}
        operation = context.get("operation")
        if not operation:
            raise DeadLetterError("Dead letter entry has no replayable context", status_code=409)

        webhook_event = context.get("webhook_event")
        current = self._current_entity(entry) if operation == "upsert" else None

        entry.retry_count = (entry.retry_count or 0) + 1
        entry.last_retry_at = utcnow()
        self.db.commit()

        if entry.entity_type == SyncEntityType.USER.value and current is not None:
            workflow_id = sync_workflow.sync_user(self.db, current, webhook_event=webhook_event)
        elif entry.entity_type == SyncEntityType.ORGANIZATION.value and current is not None:
            workflow_id = sync_workflow.sync_organization(self.db, current, webhook_event=webhook_event)
        else:
            workflow_id = sync_workflow.sync_entity(
                self.db,
                entry.entity_type,
                entry.entity_id,
                operation,
                dict(context.get("payload") or {}),
                webhook_event=webhook_event,
            )

        # The new workflow owns the outcome now; it dead-letters itself if it fails again.
        entry = self.get(entry_id)
        entry.resolved_at = utcnow()
        entry.retryable = False
        self.db.commit()
        logger.info("Dead letter %s retried as workflow %s", entry_id, workflow_id)
        return workflow_id

    def retry_all(self) -> RetryAllResult:
        ids = [
            row.id
            for row in self.db.query(DeadLetterEntry.id)
            .filter(DeadLetterEntry.resolved_at.is_(None), DeadLetterEntry.retryable.is_(True))
            .order_by(DeadLetterEntry.created_at.asc(), DeadLetterEntry.id.asc())
            .all()
        ]
        retried = failed = 0
        for entry_id in ids:
            try:
                self.retry(entry_id)
                retried += 1
            except DeadLetterError as exc:
                self.db.rollback()
                logger.warning("Dead letter %s not retried: %s", entry_id, exc)
                failed += 1
        return RetryAllResult(retried=retried, failed=failed)

    def _current_entity(self, entry: DeadLetterEntry):
        """Upserts replay the entity as it is now, not the payload frozen at failure time."""
        directory = DirectoryService(self.db)
        if entry.entity_type == SyncEntityType.USER.value:
            current = directory.get_user(entry.entity_id)
            label = "User"
        elif entry.entity_type == SyncEntityType.ORGANIZATION.value:
            current = directory.get_organization(entry.entity_id)
            label = "Organization"
        else:
            return None
        if current is None:
            raise DeadLetterError(f"{label} {entry.entity_id} not found", status_code=409)
        return current

    def resolve(self, entry_id: int) -> DeadLetterEntry:
        entry = self.get(entry_id)
        if entry.resolved_at is not None:
            raise DeadLetterError("Dead letter entry is already resolved", status_code=409)
        entry.resolved_at = utcnow()
        self.db.commit()
        self.db.refresh(entry)
        logger.info("Dead letter %s resolved manually", entry_id)
        return entry

    def cleanup_resolved(self, older_than_days: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = (
            self.db.query(DeadLetterEntry)
            .filter(DeadLetterEntry.resolved_at.isnot(None), DeadLetterEntry.resolved_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Deleted %s resolved dead letters older than %s days", deleted, older_than_days)
        return deleted
