from __future__ import annotations

from tenantsync.core import config as app_config
from tenantsync.models.directory import Organization, User
from tenantsync.models.events import EventCursor, EventFailure, ProcessedEvent
from tenantsync.services.event_poller import EventPoller
from tenantsync.services.event_processor import EventProcessor
from tenantsync.services.workos_client import IdentityProviderError


class _FakeEventsClient:
    """In-memory event log; list_events returns events strictly after the cursor."""

    def __init__(self, events: list[dict] | None = None, error: Exception | None = None):
        self.events = list(events or [])
        self.error = error
        self.calls: list[dict] = []

    def list_events(self, events, *, after=None, range_start=None, limit=100):
        self.calls.append({"events": list(events), "after": after, "range_start": range_start, "limit": limit})
        if self.error is not None:
            raise self.error
        ids = [e["id"] for e in self.events]
        start = ids.index(after) + 1 if after else 0
        return self.events[start : start + limit]


def _user_event(event_id: str, user_id: str) -> dict:
    return {"id": event_id, "event": "user.created", "data": {"id": user_id, "email": f"{user_id}@example.com"}}


def _org_event(event_id: str, org_id: str) -> dict:
    return {"id": event_id, "event": "organization.created", "data": {"id": org_id, "name": org_id}}


def _membership_event(event_id: str, org_id: str, user_id: str) -> dict:
    return {
        "id": event_id,
        "event": "organization_membership.created",
        "data": {"id": f"om_{event_id}", "organization_id": org_id, "user_id": user_id, "role": {"slug": "member"}},
    }


def test_poll_processes_page_and_advances_cursor(db_session):
    client = _FakeEventsClient([_user_event("event_1", "user_a"), _org_event("event_2", "org_a")])

    result = EventPoller(db_session, client).poll()

    assert result.processed == 2
    assert result.skipped == 0
    assert result.errors == []
    assert result.new_cursor == "event_2"

    cursor = db_session.get(EventCursor, "main")
    assert cursor.cursor == "event_2"
    assert cursor.last_processed_event_id == "event_2"
    assert cursor.last_polled_at is not None


def test_poll_filters_on_handled_event_types(db_session):
    client = _FakeEventsClient([])
    EventPoller(db_session, client).poll()

    requested = client.calls[0]["events"]
    assert "user.created" in requested
    assert "organization_membership.deleted" in requested
    assert "role.updated" in requested


def test_one_bad_event_does_not_block_the_batch(db_session):
    client = _FakeEventsClient(
        [
            _user_event("event_1", "user_a"),
            _membership_event("event_2", "org_missing", "user_a"),
            _org_event("event_3", "org_b"),
        ]
    )

    result = EventPoller(db_session, client).poll()

    assert result.processed == 2
    assert len(result.errors) == 1
    assert result.errors[0].startswith("event_2:")
    # The cursor moves past the failure; the failure ledger keeps it.
    assert result.new_cursor == "event_3"
    assert db_session.get(EventCursor, "main").cursor == "event_3"
    failure = db_session.query(EventFailure).one()
    assert failure.event_id == "event_2"
    assert failure.source == "poll"
    assert db_session.query(Organization).filter(Organization.external_id == "org_b").count() == 1


def test_poll_recovers_dropped_webhooks_and_skips_delivered_ones(db_session):
    events = [_user_event("event_1", "user_a"), _user_event("event_2", "user_b"), _user_event("event_3", "user_c")]
    processor = EventProcessor(db_session)
    # Webhooks delivered events 1 and 3; event 2 was dropped.
    processor.process("event_1", events[0], "webhook")
    processor.process("event_3", events[2], "webhook")

    result = EventPoller(db_session, _FakeEventsClient(events), processor=processor).poll()

    assert result.processed == 1
    assert result.skipped == 2
    assert db_session.query(User).count() == 3
    assert db_session.query(ProcessedEvent).count() == 3


def test_event_seen_by_poll_is_skipped_by_late_webhook(db_session):
    event = _user_event("event_1", "user_a")
    EventPoller(db_session, _FakeEventsClient([event])).poll()

    late = EventProcessor(db_session).process("event_1", event, "webhook")

    assert late.skipped is True
    assert db_session.query(User).count() == 1


def test_fatal_fetch_error_leaves_cursor_untouched(db_session):
    poller = EventPoller(db_session, _FakeEventsClient([_user_event("event_1", "user_a")]))
    poller.poll()

    failing = EventPoller(
        db_session, _FakeEventsClient(error=IdentityProviderError("network_error", "connection reset"))
    )
    result = failing.poll()

    assert result.processed == 0
    assert result.new_cursor is None
    assert result.errors == ["Fatal: connection reset"]
    assert db_session.get(EventCursor, "main").cursor == "event_1"


def test_empty_page_does_not_create_cursor(db_session):
    result = EventPoller(db_session, _FakeEventsClient([])).poll()

    assert result.new_cursor is None
    assert db_session.get(EventCursor, "main") is None


def test_subsequent_poll_resumes_after_cursor(db_session):
    client = _FakeEventsClient([_user_event("event_1", "user_a")])
    poller = EventPoller(db_session, client)
    poller.poll()

    client.events.append(_user_event("event_2", "user_b"))
    result = poller.poll()

    assert client.calls[1]["after"] == "event_1"
    assert client.calls[1]["range_start"] is None
    assert result.processed == 1
    assert result.new_cursor == "event_2"


def test_first_poll_uses_configured_range_start(db_session):
    app_config.settings.EVENTS_POLL_RANGE_START = "2026-10-01T00:00:00Z"
    client = _FakeEventsClient([])

    EventPoller(db_session, client, page_size=25).poll()

    assert client.calls[0]["range_start"] == "2026-10-01T00:00:00Z"
    assert client.calls[0]["after"] is None
    assert client.calls[0]["limit"] == 25


def test_initialize_cursor_points_at_first_event_in_range(db_session):
    client = _FakeEventsClient([_user_event("event_1", "user_a"), _user_event("event_2", "user_b")])
    poller = EventPoller(db_session, client)

    cursor = poller.initialize_cursor("2026-10-01T00:00:00Z")

    assert cursor == "event_1"
    assert client.calls[0]["range_start"] == "2026-10-01T00:00:00Z"
    assert client.calls[0]["limit"] == 1

    result = poller.poll()
    assert result.processed == 1
    assert db_session.query(User).one().external_id == "user_b"


def test_initialize_cursor_without_range_start_replays_everything(db_session):
    client = _FakeEventsClient([_user_event("event_1", "user_a"), _user_event("event_2", "user_b")])
    poller = EventPoller(db_session, client)
    poller.update_cursor("event_2")

    assert poller.initialize_cursor(None) is None
    assert client.calls == []
    assert db_session.get(EventCursor, "main").cursor is None

    result = poller.poll()

    assert result.processed == 2
    assert result.new_cursor == "event_2"
    assert {u.external_id for u in db_session.query(User).all()} == {"user_a", "user_b"}
    assert {r.event_id for r in db_session.query(ProcessedEvent).all()} == {"event_1", "event_2"}
