"""
Full-refresh billing reconciliation.

Payment events can arrive out of order, so no event payload is ever applied
directly. Every trigger re-reads the customer's complete subscription list
from Stripe and overwrites local rows keyed by subscription id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tenantsync.core.clock import from_unix
from tenantsync.core.config import settings
from tenantsync.core.errors import SyncDependencyNotReady, SyncPermanentError
from tenantsync.models.billing import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    TIER_SEAT_LIMITS,
    OrganizationSubscription,
    StripeCustomer,
    SubscriptionTier,
)
from tenantsync.models.directory import Organization
from tenantsync.models.stripe_event import StripeWebhookEvent
from tenantsync.models.sync import SyncEntityType
from tenantsync.services import sync_workflow
from tenantsync.services.ledger import is_unique_violation
from tenantsync.services.stripe import StripeService

logger = logging.getLogger(__name__)

CANCEL_REQUIRED_REASON = "You must cancel your subscription before deleting this organization."
PENDING_SETUP_REASON = "Organization setup was not completed. You can safely delete it."


class BillingError(Exception):
    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class DeletionCheck:
    can_delete: bool
    reason: str | None
    has_active_subscription: bool
    cancel_at_period_end: bool
    is_pending_setup: bool
    total_subscriptions: int
    active_subscriptions: int
    current_period_end: datetime | None = None


def plan_for_price(price_id: str | None) -> tuple[str, str]:
    """(tier, billing interval) for a Stripe price id; unknown prices fall back to personal/month."""
    return settings.stripe_price_ids().get(price_id or "", (SubscriptionTier.PERSONAL.value, "month"))


class BillingReconciler:
    def __init__(self, db: Session, stripe_service: StripeService | None = None) -> None:
        self.db = db
        self.stripe_service = stripe_service or StripeService()

    # ------------------------------------------------------------------
    # Full refresh
    # ------------------------------------------------------------------
    def sync_for_customer(
        self,
        customer_id: str,
        *,
        webhook_event: str | None = None,
    ) -> list[OrganizationSubscription] | None:
        """
        Overwrite local subscription state with Stripe's current view.
        Returns None when the customer is not linked to any organization yet
        (the event is dropped; the next event for this customer self-corrects).
        """
        customer = self._get_customer(customer_id)
        if customer is None:
            logger.warning("No organization linked to Stripe customer %s; dropping refresh", customer_id)
            return None

        org = self.db.get(Organization, customer.organization_id)
        subscriptions = self.stripe_service.list_subscriptions(customer_id)

        synced: list[OrganizationSubscription] = []
        for subscription in subscriptions:
            synced.append(self._apply_subscription(customer, subscription))
        self.db.commit()

        logger.info("Synced %s subscription(s) for customer %s", len(synced), customer_id)
        if org is not None:
            self._push_tier(org, webhook_event=webhook_event)
        return synced

    def _apply_subscription(self, customer: StripeCustomer, subscription: dict[str, Any]) -> OrganizationSubscription:
        subscription_id = subscription["id"]
        first_item = ((subscription.get("items") or {}).get("data") or [{}])[0]
        price_id = (first_item.get("price") or {}).get("id")
        tier, interval = plan_for_price(price_id)

        record = (
            self.db.query(OrganizationSubscription)
            .filter(OrganizationSubscription.stripe_subscription_id == subscription_id)
            .first()
        )
        if record is None:
            record = self._pending_record(customer.organization_id)
        if record is None:
            record = OrganizationSubscription(organization_id=customer.organization_id)
            self.db.add(record)

        cancel_at = subscription.get("cancel_at")
        payment_method = subscription.get("default_payment_method")
        card = payment_method.get("card") if isinstance(payment_method, dict) else None

        record.organization_id = customer.organization_id
        record.stripe_customer_id = customer.stripe_customer_id
        record.stripe_subscription_id = subscription_id
        record.stripe_price_id = price_id
        record.tier = tier
        record.billing_interval = interval
        record.seat_limit = TIER_SEAT_LIMITS[tier]
        record.status = subscription.get("status") or "none"
        # Newer API versions carry the period on the item; older ones on the subscription.
        record.current_period_start = from_unix(
            first_item.get("current_period_start") or subscription.get("current_period_start")
        )
        record.current_period_end = from_unix(
            first_item.get("current_period_end") or subscription.get("current_period_end")
        )
        # Portal-scheduled cancellations set cancel_at instead of cancel_at_period_end.
        record.cancel_at_period_end = bool(subscription.get("cancel_at_period_end")) or cancel_at is not None
        record.cancel_at = from_unix(cancel_at)
        record.trial_start = from_unix(subscription.get("trial_start"))
        record.trial_end = from_unix(subscription.get("trial_end"))
        record.payment_method_brand = card.get("brand") if card else None
        record.payment_method_last4 = card.get("last4") if card else None
        record.pending_checkout_session_id = None
        record.pending_price_id = None
        self.db.flush()
        return record

    def _pending_record(self, organization_id: int) -> OrganizationSubscription | None:
        return (
            self.db.query(OrganizationSubscription)
            .filter(
                OrganizationSubscription.organization_id == organization_id,
                OrganizationSubscription.stripe_subscription_id.is_(None),
            )
            .order_by(OrganizationSubscription.id.asc())
            .first()
        )

    def _push_tier(self, org: Organization, *, webhook_event: str | None) -> None:
        current = self._active_subscription(org.id) or self._most_recent_subscription(org.id)
        if current is None or not current.stripe_subscription_id:
            tier, status = SubscriptionTier.PERSONAL.value, "none"
        else:
            tier, status = current.tier, current.status
        sync_workflow.sync_organization_subscription(
            self.db, org.external_id, tier=tier, status=status, webhook_event=webhook_event
        )

    # ------------------------------------------------------------------
    # Checkout lifecycle
    # ------------------------------------------------------------------
    def create_pending_subscription(
        self,
        org_external_id: str,
        customer_id: str,
        checkout_session_id: str,
        price_id: str,
    ) -> OrganizationSubscription:
        org = self._require_org(org_external_id)
        record = (
            self.db.query(OrganizationSubscription)
            .filter(OrganizationSubscription.organization_id == org.id)
            .order_by(OrganizationSubscription.id.asc())
            .first()
        )
        if record is None:
            record = OrganizationSubscription(
                organization_id=org.id,
                stripe_customer_id=customer_id,
                tier=SubscriptionTier.PERSONAL.value,
                status="none",
                cancel_at_period_end=False,
                seat_limit=1,
            )
            self.db.add(record)
        elif record.stripe_subscription_id:
            raise BillingError("Organization already has a subscription", status_code=409)
        record.pending_checkout_session_id = checkout_session_id
        record.pending_price_id = price_id
        self.db.commit()
        self.db.refresh(record)
        return record

    def sync_after_checkout(self, *, session_id: str | None = None, customer_id: str | None = None):
        if not customer_id and session_id:
            session = self.stripe_service.retrieve_checkout_session(session_id)
            customer = session.get("customer")
            customer_id = customer if isinstance(customer, str) else (customer or {}).get("id")
        if not customer_id:
            raise BillingError("Checkout session has no customer")
        return self.sync_for_customer(customer_id, webhook_event="checkout.post_sync")

    def bind_customer(self, org_external_id: str, customer_id: str) -> StripeCustomer:
        org = self.db.query(Organization).filter(Organization.external_id == org_external_id).first()
        if org is None:
            # The organization webhook may not have landed yet.
            raise SyncDependencyNotReady(f"Organization {org_external_id} not found")

        existing = self._get_customer(customer_id)
        if existing is not None:
            if existing.organization_id != org.id:
                raise SyncPermanentError(
                    f"Stripe customer {customer_id} already linked to organization {existing.organization_id}"
                )
            return existing

        record = StripeCustomer(organization_id=org.id, stripe_customer_id=customer_id)
        try:
            self.db.add(record)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if not is_unique_violation(exc):
                raise
            return self._get_customer(customer_id)
        logger.info("Linked organization %s to Stripe customer %s", org_external_id, customer_id)
        return record

    # ------------------------------------------------------------------
    # Deletion guard
    # ------------------------------------------------------------------
    def can_delete_organization(self, org_external_id: str) -> DeletionCheck:
        org = self._require_org(org_external_id)
        subscriptions = (
            self.db.query(OrganizationSubscription)
            .filter(OrganizationSubscription.organization_id == org.id)
            .all()
        )
        total = len(subscriptions)
        active = [s for s in subscriptions if s.status in ACTIVE_SUBSCRIPTION_STATUSES]

        if active:
            current = active[0]
            if current.cancel_at_period_end:
                ends = current.cancel_at or current.current_period_end
                ends_label = ends.strftime("%Y-%m-%d") if ends else "the end of the billing period"
                reason = f"Subscription is set to cancel on {ends_label}. You can delete the organization after this date."
            else:
                reason = CANCEL_REQUIRED_REASON
            return DeletionCheck(
                can_delete=False,
                reason=reason,
                has_active_subscription=True,
                cancel_at_period_end=bool(current.cancel_at_period_end),
                is_pending_setup=False,
                total_subscriptions=total,
                active_subscriptions=len(active),
                current_period_end=current.current_period_end,
            )

        if any(s.is_pending_setup for s in subscriptions):
            return DeletionCheck(
                can_delete=True,
                reason=PENDING_SETUP_REASON,
                has_active_subscription=False,
                cancel_at_period_end=False,
                is_pending_setup=True,
                total_subscriptions=total,
                active_subscriptions=0,
            )

        most_recent = self._most_recent_subscription(org.id)
        return DeletionCheck(
            can_delete=True,
            reason=None,
            has_active_subscription=False,
            cancel_at_period_end=bool(most_recent.cancel_at_period_end) if most_recent else False,
            is_pending_setup=False,
            total_subscriptions=total,
            active_subscriptions=0,
            current_period_end=most_recent.current_period_end if most_recent else None,
        )

    # ------------------------------------------------------------------
    # Webhook ledger
    # ------------------------------------------------------------------
    def is_event_processed(self, event_id: str) -> bool:
        return (
            self.db.query(StripeWebhookEvent.id)
            .filter(StripeWebhookEvent.stripe_event_id == event_id)
            .first()
            is not None
        )

    def record_event(self, event_id: str, event_type: str, customer_id: str | None) -> bool:
        if self.is_event_processed(event_id):
            return False
        try:
            self.db.add(StripeWebhookEvent(stripe_event_id=event_id, event_type=event_type, customer_id=customer_id))
            self.db.commit()
            return True
        except IntegrityError as exc:
            self.db.rollback()
            if is_unique_violation(exc):
                return False
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_customer(self, customer_id: str) -> StripeCustomer | None:
        return self.db.query(StripeCustomer).filter(StripeCustomer.stripe_customer_id == customer_id).first()

    def _require_org(self, org_external_id: str) -> Organization:
        org = self.db.query(Organization).filter(Organization.external_id == org_external_id).first()
        if org is None:
            raise BillingError("Organization not found", status_code=404)
        return org

    def _active_subscription(self, organization_id: int) -> OrganizationSubscription | None:
        return (
            self.db.query(OrganizationSubscription)
            .filter(
                OrganizationSubscription.organization_id == organization_id,
                OrganizationSubscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
            )
            .order_by(OrganizationSubscription.updated_at.desc(), OrganizationSubscription.id.desc())
            .first()
        )

    def _most_recent_subscription(self, organization_id: int) -> OrganizationSubscription | None:
        return (
            self.db.query(OrganizationSubscription)
            .filter(OrganizationSubscription.organization_id == organization_id)
            .order_by(OrganizationSubscription.updated_at.desc(), OrganizationSubscription.id.desc())
            .first()
        )


# ----------------------------------------------------------------------
# Sync operations (run through the shared retry/dead-letter machinery)
# ----------------------------------------------------------------------
@sync_workflow.sync_operation(SyncEntityType.SUBSCRIPTION, "refresh")
def _refresh_customer(db: Session, payload: dict[str, Any]) -> None:
    reconciler = BillingReconciler(db)
    synced = reconciler.sync_for_customer(payload["customer_id"], webhook_event=payload.get("event_type"))
    if synced is not None and payload.get("event_id"):
        reconciler.record_event(payload["event_id"], payload.get("event_type") or "", payload["customer_id"])


@sync_workflow.sync_operation(SyncEntityType.SUBSCRIPTION, "bind_customer")
def _bind_customer(db: Session, payload: dict[str, Any]) -> None:
    BillingReconciler(db).bind_customer(payload["organization_external_id"], payload["customer_id"])


def schedule_customer_refresh(db: Session, customer_id: str, *, event_id: str | None, event_type: str | None) -> str:
    return sync_workflow.sync_entity(
        db,
        SyncEntityType.SUBSCRIPTION,
        customer_id,
        "refresh",
        {"customer_id": customer_id, "event_id": event_id, "event_type": event_type},
        webhook_event=event_type,
    )


def schedule_customer_binding(db: Session, org_external_id: str, customer_id: str) -> str:
    return sync_workflow.sync_entity(
        db,
        SyncEntityType.SUBSCRIPTION,
        customer_id,
        "bind_customer",
        {"organization_external_id": org_external_id, "customer_id": customer_id},
    )
