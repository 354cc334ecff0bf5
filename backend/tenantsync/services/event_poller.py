from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from tenantsync.core.clock import utcnow
from tenantsync.core.config import settings
from tenantsync.models.events import EventCursor
from tenantsync.services.event_processor import HANDLED_EVENT_TYPES, EventProcessor
from tenantsync.services.workos_client import IdentityProviderClient

logger = logging.getLogger(__name__)

CURSOR_KEY = "main"


@dataclass
class PollResult:
    processed: int = 0
    skipped: int = 0
    new_cursor: str | None = None
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "new_cursor": self.new_cursor,
            "errors": list(self.errors),
        }


class EventPoller:
    """
    Backstop for dropped webhooks: pull the provider's event log from the
    persisted cursor and push each event through the same processor.
    """

    def __init__(
        self,
        db: Session,
        client: IdentityProviderClient,
        *,
        processor: EventProcessor | None = None,
        page_size: int | None = None,
    ) -> None:
        self.db = db
        self.client = client
        self.processor = processor or EventProcessor(db)
        self.page_size = page_size or settings.EVENTS_POLL_PAGE_SIZE

    def poll(self) -> PollResult:
        result = PollResult()
        cursor = self.get_cursor()
        after = cursor.cursor if cursor else None

        try:
            events = self.client.list_events(
                HANDLED_EVENT_TYPES,
                after=after,
                range_start=None if after else settings.EVENTS_POLL_RANGE_START,
                limit=self.page_size,
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Event poll failed (cursor=%s)", after)
            result.errors.append(f"Fatal: {exc}")
            return result

        last_processed_id: str | None = None
        # Sequential on purpose: membership events lean on orgs/users created earlier in the page.
        for event in events:
            event_id = event.get("id")
            if not event_id:
                result.errors.append("Event without id skipped")
                continue
            try:
                outcome = self.processor.process(event_id, event, source="poll")
            except Exception as exc:  # pylint: disable=broad-except
                self.db.rollback()
                logger.exception("Poll could not process %s", event_id)
                result.errors.append(f"{event_id}: {exc}")
            else:
                if outcome.skipped:
                    result.skipped += 1
                elif outcome.success:
                    result.processed += 1
                    last_processed_id = event_id
                else:
                    result.errors.append(f"{event_id}: {outcome.error}")
            # Failures do not hold the cursor back; they stay in the failure ledger.
            result.new_cursor = event_id

        if result.new_cursor:
            self.update_cursor(result.new_cursor, last_processed_event_id=last_processed_id)
            logger.info(
                "Poll advanced cursor %s -> %s (processed=%s skipped=%s errors=%s)",
                after,
                result.new_cursor,
                result.processed,
                result.skipped,
                len(result.errors),
            )
        return result

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------
    def get_cursor(self) -> EventCursor | None:
        return self.db.get(EventCursor, CURSOR_KEY)

    def update_cursor(self, cursor: str | None, *, last_processed_event_id: str | None = None) -> EventCursor:
        row = self.get_cursor()
        if row is None:
            row = EventCursor(key=CURSOR_KEY)
            self.db.add(row)
        row.cursor = cursor
        row.last_polled_at = utcnow()
        if last_processed_event_id:
            row.last_processed_event_id = last_processed_event_id
        self.db.commit()
        return row

    def initialize_cursor(self, range_start: str | None = None) -> str | None:
        """
        Explicit reset. Points the cursor at the first event on or after
        `range_start`; that event counts as already seen. Without a
        `range_start` the cursor is cleared so the next poll starts from the
        oldest available event.
        """
        if not range_start:
            self.update_cursor(None)
            logger.info("Event cursor cleared; next poll fetches all available events")
            return None

        events = self.client.list_events(HANDLED_EVENT_TYPES, range_start=range_start, limit=1)
        cursor = events[0]["id"] if events else None
        self.update_cursor(cursor)
        logger.info("Event cursor initialized to %s (range_start=%s)", cursor, range_start)
        return cursor
