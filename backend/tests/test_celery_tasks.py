from __future__ import annotations

from datetime import timedelta

from tenantsync import celery_app as celery_module
from tenantsync.celery_app import celery_app, enqueue
from tenantsync.core.clock import utcnow
from tenantsync.models.directory import User
from tenantsync.models.events import EventCursor, ProcessedEvent
from tenantsync.models.sync import SyncStatus
from tenantsync.services import sync_workflow
from tenantsync.tasks import events as event_tasks
from tenantsync.tasks import sync as sync_tasks


def test_beat_schedule_runs_poller_and_cleanup():
    schedule = celery_app.conf.beat_schedule

    assert schedule["poll-identity-events"]["task"] == "events.poll_identity_events"
    assert schedule["cleanup-processed-events"]["task"] == "events.cleanup_processed_events"
    assert schedule["poll-identity-events"]["schedule"] == 60.0


def test_enqueue_uses_broker_when_configured(monkeypatch):
    calls = []

    class _Task:
        name = "fake.task"

        def apply_async(self, args, kwargs, countdown):
            calls.append((args, kwargs, countdown))

    monkeypatch.setattr(celery_module, "BROKER_CONFIGURED", True)

    enqueue(_Task(), "a", countdown=8, flag=True)

    assert calls == [(("a",), {"flag": True}, 8)]


def test_process_identity_event_task_runs_processor(db_session):
    event = {"id": "event_task", "event": "user.created", "data": {"id": "user_t", "email": "t@example.com"}}

    result = event_tasks.process_identity_event.apply(args=("event_task", event, "poll")).get()

    assert result == {"success": True, "skipped": False}
    db_session.expire_all()
    assert db_session.query(User).filter(User.external_id == "user_t").count() == 1


def test_poll_task_uses_identity_client(db_session, monkeypatch):
    class _Client:
        def list_events(self, events, *, after=None, range_start=None, limit=100):
            return [{"id": "event_p", "event": "user.created", "data": {"id": "user_p", "email": "p@example.com"}}]

    monkeypatch.setattr(event_tasks, "get_identity_client", lambda: _Client())

    result = event_tasks.poll_identity_events.apply().get()

    assert result["processed"] == 1
    assert result["new_cursor"] == "event_p"
    db_session.expire_all()
    assert db_session.get(EventCursor, "main").cursor == "event_p"


def test_cleanup_task_applies_retention(db_session):
    db_session.add_all(
        [
            ProcessedEvent(event_id="event_old", event_type="user.created", processed_at=utcnow() - timedelta(days=31)),
            ProcessedEvent(event_id="event_new", event_type="user.created", processed_at=utcnow()),
        ]
    )
    db_session.commit()

    assert event_tasks.cleanup_processed_events.apply().get() == 1
    db_session.expire_all()
    assert [r.event_id for r in db_session.query(ProcessedEvent).all()] == ["event_new"]


def test_run_entity_sync_task(db_session, user):
    workflow_id = sync_workflow.sync_user(db_session, user)

    outcome = sync_tasks.run_entity_sync.apply(
        kwargs={
            "workflow_id": workflow_id,
            "entity_type": "user",
            "entity_id": user.external_id,
            "operation": "upsert",
            "payload": {"workos_id": user.external_id, "email": user.email},
        }
    ).get()

    assert outcome == "success"
    db_session.expire_all()
    assert db_session.query(SyncStatus).one().status == "success"
