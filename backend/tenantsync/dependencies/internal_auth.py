from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, status

from tenantsync.core.config import settings


def require_internal_token(x_internal_token: str | None = Header(default=None)) -> None:
    """
    Shared-secret auth for operator tooling and app-layer callbacks
    (/internal/* and /admin/*).
    """
    if not settings.INTERNAL_API_TOKEN:
        raise HTTPException(status_code=500, detail="Server missing INTERNAL_API_TOKEN")

    if not x_internal_token or not hmac.compare_digest(x_internal_token, settings.INTERNAL_API_TOKEN):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
