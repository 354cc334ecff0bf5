from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from tenantsync.core.database import get_db
from tenantsync.dependencies.internal_auth import require_internal_token
from tenantsync.schemas.sync import (
    DeadLetterCleanupRequest,
    DeadLetterCleanupResponse,
    DeadLetterEntryOut,
    DeadLetterListResponse,
    DeadLetterRetryAllResponse,
    DeadLetterRetryResponse,
    SyncStatsResponse,
)
from tenantsync.services.dead_letters import DeadLetterError, DeadLetterService
from tenantsync.services.sync_workflow import get_sync_stats

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/admin/sync",
    tags=["admin"],
    dependencies=[Depends(require_internal_token)],
)


def get_dead_letter_service(db: Session = Depends(get_db)) -> DeadLetterService:
    return DeadLetterService(db)


@router.get("/dead-letters", response_model=DeadLetterListResponse)
def list_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    include_resolved: bool = Query(False),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> DeadLetterListResponse:
    entries = service.list_entries(limit=limit, include_resolved=include_resolved)
    return DeadLetterListResponse(entries=[DeadLetterEntryOut.model_validate(e) for e in entries])


@router.post("/dead-letters/retry-all", response_model=DeadLetterRetryAllResponse)
def retry_all_dead_letters(
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> DeadLetterRetryAllResponse:
    result = service.retry_all()
    logger.info("Retry-all dead letters: retried=%s failed=%s", result.retried, result.failed)
    return DeadLetterRetryAllResponse(retried=result.retried, failed=result.failed)


@router.post("/dead-letters/cleanup", response_model=DeadLetterCleanupResponse)
def cleanup_dead_letters(
    payload: DeadLetterCleanupRequest,
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> DeadLetterCleanupResponse:
    return DeadLetterCleanupResponse(deleted=service.cleanup_resolved(payload.older_than_days))


@router.post("/dead-letters/{entry_id}/retry", response_model=DeadLetterRetryResponse)
def retry_dead_letter(
    entry_id: int,
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> DeadLetterRetryResponse:
    try:
        workflow_id = service.retry(entry_id)
    except DeadLetterError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return DeadLetterRetryResponse(id=entry_id, workflow_id=workflow_id)


@router.post("/dead-letters/{entry_id}/resolve", response_model=DeadLetterEntryOut, status_code=status.HTTP_200_OK)
def resolve_dead_letter(
    entry_id: int,
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> DeadLetterEntryOut:
    try:
        entry = service.resolve(entry_id)
    except DeadLetterError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return DeadLetterEntryOut.model_validate(entry)


@router.get("/stats", response_model=SyncStatsResponse)
def sync_stats(
    since: datetime | None = Query(None),
    db: Session = Depends(get_db),
) -> SyncStatsResponse:
    return SyncStatsResponse(**get_sync_stats(db, since=since))
