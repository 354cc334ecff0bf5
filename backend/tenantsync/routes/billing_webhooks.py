from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from tenantsync.core.database import get_db
from tenantsync.services.billing import BillingReconciler, schedule_customer_refresh
from tenantsync.services.stripe import StripeService, StripeWebhookError, extract_customer_id, is_tracked_event

router = APIRouter(prefix="/webhooks/billing", tags=["webhooks"])

logger = logging.getLogger(__name__)


@router.post("/events", status_code=status.HTTP_200_OK)
async def billing_webhook(
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    service = StripeService()
    try:
        event = service.parse_event(payload, signature)
    except StripeWebhookError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    event_id = event.get("id")
    event_type = event.get("type")
    if not is_tracked_event(event_type):
        return {"received": True, "skipped": True}

    reconciler = BillingReconciler(db, stripe_service=service)
    if event_id and reconciler.is_event_processed(event_id):
        logger.info("Duplicate billing event %s (%s)", event_id, event_type)
        return {"received": True, "duplicate": True}

    customer_id = extract_customer_id(event)
    if not customer_id:
        logger.warning("Billing event %s (%s) has no customer; skipping", event_id, event_type)
        return {"received": True, "skipped": True}

    try:
        synced = reconciler.sync_for_customer(customer_id, webhook_event=event_type)
        if synced is None:
            return {"received": True, "skipped": True}
        if event_id:
            reconciler.record_event(event_id, event_type, customer_id)
    except Exception as exc:  # pylint: disable=broad-except
        # Still 200: Stripe retries on non-2xx, and the refresh is retried by the sync workflow instead.
        db.rollback()
        logger.exception("Inline refresh failed for customer %s (%s); scheduling retry", customer_id, event_id)
        schedule_customer_refresh(db, customer_id, event_id=event_id, event_type=event_type)
        return {"received": True, "error": str(exc)}

    return {"received": True, "synced": True}
