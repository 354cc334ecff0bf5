"""
Thin httpx wrapper around the WorkOS REST API plus webhook signature checks.

Keeps httpx-specific errors from leaking into the event pipeline; callers
only ever see IdentityProviderError or WebhookVerificationError.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from functools import lru_cache
from typing import Any, Iterable

import httpx

from tenantsync.core.config import settings

SIGNATURE_HEADER = "workos-signature"


class IdentityProviderError(Exception):
    """Raised when WorkOS returns an error or cannot be reached."""

    def __init__(self, code: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class WebhookVerificationError(Exception):
    """Raised when a webhook payload cannot be authenticated."""


def _translate_error(exc: httpx.HTTPError) -> IdentityProviderError:
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        code = "workos_error"
        message = response.text or str(exc)
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = str(body.get("code") or body.get("error") or code)
            message = str(body.get("message") or body.get("error_description") or message)
        return IdentityProviderError(code=code, message=message, status_code=response.status_code)
    return IdentityProviderError(code="network_error", message=str(exc))


class IdentityProviderClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        http_client: httpx.Client | None = None,
    ) -> None:
        key = api_key if api_key is not None else settings.WORKOS_API_KEY
        if not key and http_client is None:
            raise RuntimeError("WORKOS_API_KEY is not configured")
        self._http = http_client or httpx.Client(
            base_url=base_url or settings.WORKOS_API_BASE_URL,
            headers={"Authorization": f"Bearer {key}"},
            timeout=settings.WORKOS_HTTP_TIMEOUT_SECONDS,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._http.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise _translate_error(exc) from exc
        if not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_user(self, user_id: str) -> dict[str, Any]:
        return self._request("GET", f"/user_management/users/{user_id}")

    def get_organization(self, organization_id: str) -> dict[str, Any]:
        return self._request("GET", f"/organizations/{organization_id}")

    # ------------------------------------------------------------------
    # Events API
    # ------------------------------------------------------------------
    def list_events(
        self,
        events: Iterable[str],
        *,
        after: str | None = None,
        range_start: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Events strictly after `after`, oldest first."""
        params: list[tuple[str, str | int]] = [("events", name) for name in events]
        params.append(("limit", limit))
        if after:
            params.append(("after", after))
        if range_start:
            params.append(("range_start", range_start))
        body = self._request("GET", "/events", params=params) or {}
        return list(body.get("data") or [])

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def list_sessions(self, user_id: str) -> list[dict[str, Any]]:
        body = self._request("GET", f"/user_management/users/{user_id}/sessions") or {}
        return list(body.get("data") or [])

    def revoke_session(self, session_id: str) -> None:
        self._request("POST", "/user_management/sessions/revoke", json={"session_id": session_id})

    def revoke_all_sessions(self, user_id: str) -> int:
        sessions = self.list_sessions(user_id)
        for session in sessions:
            self.revoke_session(session["id"])
        return len(sessions)


@lru_cache(maxsize=1)
def get_identity_client() -> IdentityProviderClient:
    return IdentityProviderClient()


# ----------------------------------------------------------------------
# Webhook signatures
# ----------------------------------------------------------------------
def _parse_signature_header(header: str) -> tuple[int, str]:
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    try:
        return int(parts["t"]), parts["v1"]
    except (KeyError, ValueError) as exc:
        raise WebhookVerificationError("Malformed signature header") from exc


def compute_signature(payload: bytes, secret: str, timestamp_ms: int) -> str:
    signed = f"{timestamp_ms}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def construct_event(
    payload: bytes,
    sig_header: str | None,
    secret: str,
    *,
    tolerance_seconds: int | None = None,
    now: float | None = None,
) -> dict[str, Any]:
    """Verify a `t=<ms>, v1=<hex>` signature and return the decoded event envelope."""
    if not secret:
        raise WebhookVerificationError("Webhook secret is not configured")
    if not sig_header:
        raise WebhookVerificationError("Missing signature header")

    timestamp_ms, signature = _parse_signature_header(sig_header)
    tolerance = settings.WORKOS_WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
    now_ms = int((now if now is not None else time.time()) * 1000)
    if abs(now_ms - timestamp_ms) > tolerance * 1000:
        raise WebhookVerificationError("Signature timestamp outside tolerance")

    expected = compute_signature(payload, secret, timestamp_ms)
    if not hmac.compare_digest(expected, signature):
        raise WebhookVerificationError("Signature mismatch")

    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise WebhookVerificationError("Payload is not valid JSON") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("event"):
        raise WebhookVerificationError("Payload is missing id/event")
    return event
