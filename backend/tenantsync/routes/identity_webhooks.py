from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, Response, status

from tenantsync.celery_app import enqueue
from tenantsync.core.config import settings
from tenantsync.services.workos_client import SIGNATURE_HEADER, WebhookVerificationError, construct_event
from tenantsync.tasks import events as event_tasks

router = APIRouter(prefix="/webhooks/identity", tags=["webhooks"])

logger = logging.getLogger(__name__)

# Event families each signing secret may speak for.
_CATEGORY_PREFIXES: dict[str, tuple[str, ...]] = {
    "users": ("user.",),
    "organizations": ("organization.", "organization_domain.", "role."),
    "memberships": ("organization_membership.",),
}


async def _accept(request: Request, category: str) -> Response:
    """
    Verify and enqueue only. The sender's response budget is short, so
    processing always happens in a worker.
    """
    payload = await request.body()
    try:
        event = construct_event(
            payload,
            request.headers.get(SIGNATURE_HEADER),
            settings.webhook_secret_for(category),
        )
    except WebhookVerificationError as exc:
        logger.warning("Rejected %s webhook: %s", category, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    event_id = event["id"]
    event_type = event["event"]
    if not event_type.startswith(_CATEGORY_PREFIXES[category]):
        logger.warning("Ignoring %s (%s) delivered to %s webhook", event_type, event_id, category)
        return Response(status_code=status.HTTP_200_OK)

    try:
        enqueue(event_tasks.process_identity_event, event_id, event, "webhook")
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Failed to enqueue %s (%s)", event_type, event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to schedule event processing",
        ) from exc

    logger.info("Accepted %s (%s) via %s webhook", event_type, event_id, category)
    return Response(status_code=status.HTTP_200_OK)


@router.post("/users", status_code=status.HTTP_200_OK)
async def users_webhook(request: Request) -> Response:
    return await _accept(request, "users")


@router.post("/organizations", status_code=status.HTTP_200_OK)
async def organizations_webhook(request: Request) -> Response:
    return await _accept(request, "organizations")


@router.post("/memberships", status_code=status.HTTP_200_OK)
async def memberships_webhook(request: Request) -> Response:
    return await _accept(request, "memberships")
