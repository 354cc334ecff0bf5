from __future__ import annotations

import json
import time

from tenantsync.models.directory import User
from tenantsync.models.events import ProcessedEvent
from tenantsync.routes import identity_webhooks
from tenantsync.services.workos_client import SIGNATURE_HEADER, compute_signature


def _signed(event: dict, secret: str, timestamp_ms: int | None = None) -> tuple[bytes, dict]:
    payload = json.dumps(event).encode("utf-8")
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    header = f"t={ts}, v1={compute_signature(payload, secret, ts)}"
    return payload, {SIGNATURE_HEADER: header, "content-type": "application/json"}


def _user_event(event_id: str = "event_01", event_type: str = "user.created") -> dict:
    return {
        "id": event_id,
        "event": event_type,
        "data": {"id": "user_ada", "email": "ada@example.com", "first_name": "Ada"},
        "created_at": "2026-10-18T09:00:00.000Z",
    }


class _EnqueueRecorder:
    def __init__(self, error: Exception | None = None):
        self.calls: list[tuple] = []
        self.error = error

    def __call__(self, task, *args, **kwargs):
        if self.error is not None:
            raise self.error
        self.calls.append((task.name, args, kwargs))


def test_valid_webhook_is_enqueued_not_processed(client, db_session, monkeypatch):
    recorder = _EnqueueRecorder()
    monkeypatch.setattr(identity_webhooks, "enqueue", recorder)
    event = _user_event()
    payload, headers = _signed(event, "whsec_users")

    resp = client.post("/webhooks/identity/users", content=payload, headers=headers)

    assert resp.status_code == 200
    assert resp.content == b""
    assert recorder.calls == [("events.process_identity_event", ("event_01", event, "webhook"), {})]
    assert db_session.query(User).count() == 0


def test_invalid_signature_rejected(client, monkeypatch):
    recorder = _EnqueueRecorder()
    monkeypatch.setattr(identity_webhooks, "enqueue", recorder)
    payload, headers = _signed(_user_event(), "not_the_secret")

    resp = client.post("/webhooks/identity/users", content=payload, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_ERROR"
    assert recorder.calls == []


def test_each_category_uses_its_own_secret(client, monkeypatch):
    recorder = _EnqueueRecorder()
    monkeypatch.setattr(identity_webhooks, "enqueue", recorder)
    event = {"id": "event_org", "event": "organization.created", "data": {"id": "org_acme", "name": "Acme"}}
    payload, headers = _signed(event, "whsec_users")

    resp = client.post("/webhooks/identity/organizations", content=payload, headers=headers)
    assert resp.status_code == 400

    payload, headers = _signed(event, "whsec_orgs")
    resp = client.post("/webhooks/identity/organizations", content=payload, headers=headers)
    assert resp.status_code == 200
    assert len(recorder.calls) == 1


def test_missing_signature_header_rejected(client):
    resp = client.post("/webhooks/identity/users", content=json.dumps(_user_event()).encode("utf-8"))
    assert resp.status_code == 400
    assert "Missing signature" in resp.json()["message"]


def test_stale_timestamp_rejected(client, monkeypatch):
    recorder = _EnqueueRecorder()
    monkeypatch.setattr(identity_webhooks, "enqueue", recorder)
    stale = int((time.time() - 600) * 1000)
    payload, headers = _signed(_user_event(), "whsec_users", timestamp_ms=stale)

    resp = client.post("/webhooks/identity/users", content=payload, headers=headers)

    assert resp.status_code == 400
    assert recorder.calls == []


def test_event_from_other_category_is_acknowledged_but_ignored(client, monkeypatch):
    recorder = _EnqueueRecorder()
    monkeypatch.setattr(identity_webhooks, "enqueue", recorder)
    event = {"id": "event_org", "event": "organization.created", "data": {"id": "org_acme"}}
    payload, headers = _signed(event, "whsec_users")

    resp = client.post("/webhooks/identity/users", content=payload, headers=headers)

    assert resp.status_code == 200
    assert recorder.calls == []


def test_enqueue_failure_returns_500_so_sender_retries(client, monkeypatch):
    monkeypatch.setattr(identity_webhooks, "enqueue", _EnqueueRecorder(error=RuntimeError("broker down")))
    payload, headers = _signed(_user_event(), "whsec_users")

    resp = client.post("/webhooks/identity/users", content=payload, headers=headers)

    assert resp.status_code == 500
    assert resp.json()["error"] == "INTERNAL_ERROR"


def test_without_broker_event_is_processed_inline(client, db_session):
    payload, headers = _signed(_user_event("event_inline"), "whsec_users")

    resp = client.post("/webhooks/identity/users", content=payload, headers=headers)

    assert resp.status_code == 200
    db_session.expire_all()
    assert db_session.query(User).filter(User.external_id == "user_ada").count() == 1
    assert db_session.query(ProcessedEvent).filter(ProcessedEvent.event_id == "event_inline").count() == 1
