from __future__ import annotations

import json

import httpx
import pytest

from tenantsync.services.workos_client import (
    IdentityProviderClient,
    IdentityProviderError,
    WebhookVerificationError,
    compute_signature,
    construct_event,
)

NOW = 1_760_000_000.0
NOW_MS = int(NOW * 1000)


def _header(payload: bytes, secret: str, ts_ms: int = NOW_MS) -> str:
    return f"t={ts_ms}, v1={compute_signature(payload, secret, ts_ms)}"


def test_construct_event_returns_envelope():
    payload = json.dumps({"id": "event_01", "event": "user.created", "data": {"id": "user_1"}}).encode("utf-8")

    event = construct_event(payload, _header(payload, "secret"), "secret", tolerance_seconds=180, now=NOW)

    assert event["id"] == "event_01"
    assert event["data"] == {"id": "user_1"}


def test_construct_event_rejects_tampered_payload():
    payload = json.dumps({"id": "event_01", "event": "user.created"}).encode("utf-8")
    header = _header(payload, "secret")
    tampered = payload.replace(b"user.created", b"user.deleted")

    with pytest.raises(WebhookVerificationError, match="mismatch"):
        construct_event(tampered, header, "secret", tolerance_seconds=180, now=NOW)


def test_construct_event_enforces_tolerance_window():
    payload = json.dumps({"id": "event_01", "event": "user.created"}).encode("utf-8")
    header = _header(payload, "secret", ts_ms=NOW_MS - 181_000)

    with pytest.raises(WebhookVerificationError, match="tolerance"):
        construct_event(payload, header, "secret", tolerance_seconds=180, now=NOW)

    # Inside the window on the other side is fine.
    header = _header(payload, "secret", ts_ms=NOW_MS + 179_000)
    assert construct_event(payload, header, "secret", tolerance_seconds=180, now=NOW)["id"] == "event_01"


@pytest.mark.parametrize("header", ["", "garbage", "t=abc, v1=deadbeef", "v1=deadbeef"])
def test_construct_event_rejects_malformed_headers(header):
    with pytest.raises(WebhookVerificationError):
        construct_event(b"{}", header, "secret", tolerance_seconds=180, now=NOW)


def test_construct_event_requires_configured_secret():
    payload = b'{"id": "event_01", "event": "user.created"}'
    with pytest.raises(WebhookVerificationError, match="not configured"):
        construct_event(payload, _header(payload, "secret"), "", tolerance_seconds=180, now=NOW)


def test_construct_event_requires_id_and_type():
    payload = json.dumps({"event": "user.created"}).encode("utf-8")
    with pytest.raises(WebhookVerificationError, match="missing id/event"):
        construct_event(payload, _header(payload, "secret"), "secret", tolerance_seconds=180, now=NOW)


def _client(handler) -> IdentityProviderClient:
    http = httpx.Client(transport=httpx.MockTransport(handler), base_url="https://api.workos.test")
    return IdentityProviderClient(http_client=http)


def test_list_events_sends_filters_and_cursor():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "event_02", "event": "user.updated"}]})

    events = _client(handler).list_events(["user.created", "user.updated"], after="event_01", limit=10)

    assert [e["id"] for e in events] == ["event_02"]
    params = seen[0].url.params
    assert params.get_list("events") == ["user.created", "user.updated"]
    assert params["after"] == "event_01"
    assert params["limit"] == "10"
    assert "range_start" not in params


def test_http_errors_are_translated():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"code": "entity_not_found", "message": "User not found"})

    with pytest.raises(IdentityProviderError) as excinfo:
        _client(handler).get_user("user_missing")

    assert excinfo.value.code == "entity_not_found"
    assert excinfo.value.status_code == 404
    assert str(excinfo.value) == "User not found"


def test_network_errors_are_translated():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(IdentityProviderError) as excinfo:
        _client(handler).list_events(["user.created"])

    assert excinfo.value.code == "network_error"
    assert excinfo.value.status_code is None


def test_revoke_all_sessions_revokes_each_session():
    revoked: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"data": [{"id": "session_1"}, {"id": "session_2"}]})
        revoked.append(json.loads(request.content)["session_id"])
        return httpx.Response(200)

    assert _client(handler).revoke_all_sessions("user_ada") == 2
    assert revoked == ["session_1", "session_2"]
