from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from tenantsync.core.database import get_db
from tenantsync.dependencies.internal_auth import require_internal_token
from tenantsync.schemas.events import (
    CursorInitializeRequest,
    EventCursorOut,
    EventFailureOut,
    IdentityRefreshResponse,
    PollResultOut,
    ProcessedEventOut,
    ProcessResultOut,
    RevokeSessionsResponse,
)
from tenantsync.services import sync_workflow
from tenantsync.services.directory import DirectoryService
from tenantsync.services.event_poller import EventPoller
from tenantsync.services.event_processor import EventProcessor
from tenantsync.services.ledger import IdempotencyLedger
from tenantsync.services.workos_client import IdentityProviderClient, IdentityProviderError, get_identity_client

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_internal_token)],
)


def get_provider_client() -> IdentityProviderClient:
    try:
        return get_identity_client()
    except RuntimeError as exc:
        logger.error("Identity provider client unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider is not configured",
        ) from exc


def _provider_http_error(exc: IdentityProviderError) -> HTTPException:
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"{exc.code}: {exc}")


# ----------------------------------------------------------------------
# Event cursor / polling
# ----------------------------------------------------------------------
@router.get("/events/cursor", response_model=EventCursorOut)
def get_event_cursor(
    db: Session = Depends(get_db),
    client: IdentityProviderClient = Depends(get_provider_client),
) -> EventCursorOut:
    row = EventPoller(db, client).get_cursor()
    if row is None:
        return EventCursorOut()
    return EventCursorOut.model_validate(row)


@router.post("/events/cursor/initialize", response_model=EventCursorOut)
def initialize_event_cursor(
    payload: CursorInitializeRequest,
    db: Session = Depends(get_db),
    client: IdentityProviderClient = Depends(get_provider_client),
) -> EventCursorOut:
    poller = EventPoller(db, client)
    try:
        poller.initialize_cursor(payload.range_start)
    except IdentityProviderError as exc:
        raise _provider_http_error(exc) from exc
    return EventCursorOut.model_validate(poller.get_cursor())


@router.post("/events/poll", response_model=PollResultOut)
def poll_events_now(
    db: Session = Depends(get_db),
    client: IdentityProviderClient = Depends(get_provider_client),
) -> PollResultOut:
    result = EventPoller(db, client).poll()
    return PollResultOut(**result.as_dict())


@router.get("/events/processed", response_model=list[ProcessedEventOut])
def list_processed_events(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[ProcessedEventOut]:
    return [ProcessedEventOut.model_validate(row) for row in IdempotencyLedger(db).recent(limit)]


@router.get("/events/failures", response_model=list[EventFailureOut])
def list_event_failures(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[EventFailureOut]:
    return [EventFailureOut.model_validate(row) for row in EventProcessor(db).list_failures(limit)]


@router.post("/events/failures/{event_id}/replay", response_model=ProcessResultOut)
def replay_event_failure(
    event_id: str,
    db: Session = Depends(get_db),
) -> ProcessResultOut:
    result = EventProcessor(db).replay_failure(event_id)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event failure not found")
    return ProcessResultOut(success=result.success, skipped=result.skipped, error=result.error)


# ----------------------------------------------------------------------
# Manual identity refresh
# ----------------------------------------------------------------------
@router.post("/identity/users/{external_id}/refresh", response_model=IdentityRefreshResponse)
def refresh_user(
    external_id: str,
    db: Session = Depends(get_db),
    client: IdentityProviderClient = Depends(get_provider_client),
) -> IdentityRefreshResponse:
    try:
        data = client.get_user(external_id)
    except IdentityProviderError as exc:
        raise _provider_http_error(exc) from exc

    user = DirectoryService(db).upsert_user(data)
    workflow_id = sync_workflow.sync_user(db, user, webhook_event="admin.refresh")
    return IdentityRefreshResponse(external_id=user.external_id, local_id=user.id, workflow_id=workflow_id)


@router.post("/identity/organizations/{external_id}/refresh", response_model=IdentityRefreshResponse)
def refresh_organization(
    external_id: str,
    db: Session = Depends(get_db),
    client: IdentityProviderClient = Depends(get_provider_client),
) -> IdentityRefreshResponse:
    try:
        data = client.get_organization(external_id)
    except IdentityProviderError as exc:
        raise _provider_http_error(exc) from exc

    org = DirectoryService(db).upsert_organization(data)
    workflow_id = sync_workflow.sync_organization(db, org, webhook_event="admin.refresh")
    return IdentityRefreshResponse(external_id=org.external_id, local_id=org.id, workflow_id=workflow_id)


@router.post("/identity/users/{external_id}/revoke-sessions", response_model=RevokeSessionsResponse)
def revoke_user_sessions(
    external_id: str,
    client: IdentityProviderClient = Depends(get_provider_client),
) -> RevokeSessionsResponse:
    try:
        revoked = client.revoke_all_sessions(external_id)
    except IdentityProviderError as exc:
        raise _provider_http_error(exc) from exc
    logger.info("Revoked %s session(s) for user %s", revoked, external_id)
    return RevokeSessionsResponse(external_id=external_id, revoked=revoked)
