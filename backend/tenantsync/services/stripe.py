from __future__ import annotations

import logging
from typing import Any

import stripe

from tenantsync.core.config import settings

logger = logging.getLogger(__name__)

# Payment events that can change a customer's subscription picture.
TRACKED_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "checkout.session.completed",
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.paused",
        "customer.subscription.resumed",
        "customer.subscription.pending_update_applied",
        "customer.subscription.pending_update_expired",
        "customer.subscription.trial_will_end",
        "invoice.paid",
        "invoice.payment_failed",
        "invoice.payment_action_required",
        "invoice.upcoming",
        "invoice.marked_uncollectible",
        "invoice.payment_succeeded",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
    }
)


class StripeServiceError(Exception):
    """Base error for Stripe service operations."""


class StripeWebhookError(StripeServiceError):
    """Raised when a webhook payload cannot be verified."""


class StripeService:
    """
    Stripe integration facade. All direct Stripe SDK calls live here.

    Responsibilities:
    - Verify webhook signatures and deserialize events
    - Read a customer's complete subscription state for full-refresh reconciliation
    - Resolve checkout sessions back to their customer
    """

    def __init__(self, stripe_client: Any | None = None):
        self.stripe = stripe_client or stripe
        if settings.STRIPE_SECRET_KEY:
            self.stripe.api_key = settings.STRIPE_SECRET_KEY

    # ------------------------------------------------------------------
    # Webhook handling
    # ------------------------------------------------------------------
    def parse_event(self, payload: bytes, signature: str | None) -> Any:
        """Validate webhook signature and deserialize the event."""
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise StripeWebhookError("Stripe webhook secret is not configured")
        if not signature:
            raise StripeWebhookError("Missing Stripe-Signature header")
        try:
            event = self.stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=settings.STRIPE_WEBHOOK_SECRET,
            )
        except ValueError as exc:
            raise StripeWebhookError(f"Invalid Stripe payload: {exc}") from exc
        except self.stripe.SignatureVerificationError as exc:
            raise StripeWebhookError(f"Invalid Stripe signature: {exc}") from exc
        return as_dict(event)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_subscriptions(self, customer_id: str) -> list[Any]:
        self._require_secret()
        try:
            page = self.stripe.Subscription.list(
                customer=customer_id,
                status="all",
                limit=100,
                expand=["data.default_payment_method"],
            )
        except self.stripe.StripeError as exc:
            raise StripeServiceError(f"Unable to list subscriptions for {customer_id}: {exc}") from exc
        return list(as_dict(page).get("data") or [])

    def retrieve_checkout_session(self, session_id: str) -> Any:
        self._require_secret()
        try:
            session = self.stripe.checkout.Session.retrieve(session_id)
        except self.stripe.StripeError as exc:
            raise StripeServiceError(f"Unable to retrieve checkout session {session_id}: {exc}") from exc
        return as_dict(session)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_secret(self) -> None:
        if not settings.STRIPE_SECRET_KEY:
            raise StripeServiceError("Stripe secret key is not configured")


def is_tracked_event(event_type: str | None) -> bool:
    return bool(event_type) and event_type in TRACKED_EVENT_TYPES


def extract_customer_id(event: Any) -> str | None:
    obj = (event.get("data") or {}).get("object") or {}
    customer = obj.get("customer")
    if isinstance(customer, str):
        return customer or None
    if customer is not None:
        # Expanded customer object.
        return customer.get("id")
    return None


def as_dict(obj: Any) -> dict[str, Any]:
    """Plain nested dicts from StripeObjects so callers never depend on SDK object behavior."""
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)
