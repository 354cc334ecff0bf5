from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tenantsync.core.clock import utcnow
from tenantsync.models.events import ProcessedEvent

logger = logging.getLogger(__name__)


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None)
    if pgcode == "23505":
        return True
    message = str(orig or exc)
    return "UNIQUE constraint failed" in message or "duplicate key value" in message


class IdempotencyLedger:
    """
    Durable record of identity-provider event ids that were fully handled.

    Keyed by the provider's own event id so the webhook and poll paths agree
    on identity without talking to each other.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def is_processed(self, event_id: str) -> bool:
        return (
            self.db.query(ProcessedEvent.id)
            .filter(ProcessedEvent.event_id == event_id)
            .first()
            is not None
        )

    def mark_processed(self, event_id: str, event_type: str) -> bool:
        """Returns False when the event was already recorded (including a lost insert race)."""
        if self.is_processed(event_id):
            return False
        record = ProcessedEvent(event_id=event_id, event_type=event_type, processed_at=utcnow())
        try:
            self.db.add(record)
            self.db.commit()
            return True
        except IntegrityError as exc:
            self.db.rollback()
            if is_unique_violation(exc):
                logger.info("Event %s marked processed concurrently", event_id)
                return False
            raise

    def recent(self, limit: int = 50) -> list[ProcessedEvent]:
        return (
            self.db.query(ProcessedEvent)
            .order_by(ProcessedEvent.processed_at.desc(), ProcessedEvent.id.desc())
            .limit(limit)
            .all()
        )

    def cleanup_older_than(self, cutoff: datetime, batch_size: int = 500) -> int:
        total = 0
        while True:
            ids = [
                row.id
                for row in self.db.query(ProcessedEvent.id)
                .filter(ProcessedEvent.processed_at < cutoff)
                .limit(batch_size)
                .all()
            ]
            if not ids:
                break
            self.db.query(ProcessedEvent).filter(ProcessedEvent.id.in_(ids)).delete(synchronize_session=False)
            self.db.commit()
            total += len(ids)
            if len(ids) < batch_size:
                break
        return total

    def cleanup_expired(self, retention_days: int, batch_size: int = 500) -> int:
        deleted = self.cleanup_older_than(utcnow() - timedelta(days=retention_days), batch_size)
        if deleted:
            logger.info("Deleted %s processed events older than %s days", deleted, retention_days)
        return deleted
