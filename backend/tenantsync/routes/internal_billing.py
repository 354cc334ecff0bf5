from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from tenantsync.core.database import get_db
from tenantsync.core.errors import SyncDependencyNotReady, SyncPermanentError
from tenantsync.dependencies.internal_auth import require_internal_token
from tenantsync.schemas.billing import (
    BindCustomerRequest,
    BindCustomerResponse,
    DeletionCheckResponse,
    PendingCheckoutRequest,
    PostCheckoutSyncRequest,
    PostCheckoutSyncResponse,
    SubscriptionOut,
)
from tenantsync.services.billing import BillingError, BillingReconciler, schedule_customer_binding
from tenantsync.services.stripe import StripeServiceError

router = APIRouter(
    prefix="/internal/billing",
    tags=["internal"],
    include_in_schema=False,
    dependencies=[Depends(require_internal_token)],
)

logger = logging.getLogger(__name__)


@router.post("/sync", response_model=PostCheckoutSyncResponse)
def post_checkout_sync(
    payload: PostCheckoutSyncRequest,
    db: Session = Depends(get_db),
) -> PostCheckoutSyncResponse:
    """Called by the app right after a checkout redirect so the UI does not wait on webhooks."""
    reconciler = BillingReconciler(db)
    try:
        synced = reconciler.sync_after_checkout(
            session_id=payload.checkout_session_id,
            customer_id=payload.customer_id,
        )
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    subscriptions = synced or []
    customer_id = payload.customer_id or (subscriptions[0].stripe_customer_id if subscriptions else None)
    return PostCheckoutSyncResponse(
        customer_id=customer_id,
        linked=synced is not None,
        subscriptions=[SubscriptionOut.model_validate(s) for s in subscriptions],
    )


@router.post("/pending-checkout", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
def create_pending_checkout(
    payload: PendingCheckoutRequest,
    db: Session = Depends(get_db),
) -> SubscriptionOut:
    try:
        record = BillingReconciler(db).create_pending_subscription(
            payload.organization_external_id,
            payload.customer_id,
            payload.checkout_session_id,
            payload.price_id,
        )
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return SubscriptionOut.model_validate(record)


@router.post("/customers", response_model=BindCustomerResponse)
def bind_customer(
    payload: BindCustomerRequest,
    db: Session = Depends(get_db),
) -> BindCustomerResponse:
    try:
        BillingReconciler(db).bind_customer(payload.organization_external_id, payload.customer_id)
    except SyncPermanentError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except SyncDependencyNotReady:
        # Organization webhook has not landed yet; let the sync workflow wait for it.
        workflow_id = schedule_customer_binding(db, payload.organization_external_id, payload.customer_id)
        logger.info(
            "Deferred binding of %s to %s (workflow %s)",
            payload.customer_id,
            payload.organization_external_id,
            workflow_id,
        )
        return BindCustomerResponse(
            organization_external_id=payload.organization_external_id,
            customer_id=payload.customer_id,
            linked=False,
            workflow_id=workflow_id,
        )

    return BindCustomerResponse(
        organization_external_id=payload.organization_external_id,
        customer_id=payload.customer_id,
        linked=True,
    )


@router.get("/organizations/{external_id}/deletion-check", response_model=DeletionCheckResponse)
def deletion_check(
    external_id: str,
    db: Session = Depends(get_db),
) -> DeletionCheckResponse:
    try:
        check = BillingReconciler(db).can_delete_organization(external_id)
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return DeletionCheckResponse(
        can_delete=check.can_delete,
        reason=check.reason,
        has_active_subscription=check.has_active_subscription,
        cancel_at_period_end=check.cancel_at_period_end,
        is_pending_setup=check.is_pending_setup,
        total_subscriptions=check.total_subscriptions,
        active_subscriptions=check.active_subscriptions,
        current_period_end=check.current_period_end,
    )
