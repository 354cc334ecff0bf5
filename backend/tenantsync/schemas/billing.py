from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PostCheckoutSyncRequest(BaseModel):
    customer_id: str | None = None
    checkout_session_id: str | None = None

    @model_validator(mode="after")
    def _require_one(self) -> "PostCheckoutSyncRequest":
        if not self.customer_id and not self.checkout_session_id:
            raise ValueError("customer_id or checkout_session_id is required")
        return self


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stripe_customer_id: str
    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None
    tier: str
    status: str
    billing_interval: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool
    cancel_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    seat_limit: int
    payment_method_brand: str | None = None
    payment_method_last4: str | None = None
    pending_checkout_session_id: str | None = None
    pending_price_id: str | None = None


class PostCheckoutSyncResponse(BaseModel):
    customer_id: str | None = None
    linked: bool
    subscriptions: list[SubscriptionOut]


class PendingCheckoutRequest(BaseModel):
    organization_external_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    checkout_session_id: str = Field(..., min_length=1)
    price_id: str = Field(..., min_length=1)


class BindCustomerRequest(BaseModel):
    organization_external_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)


class BindCustomerResponse(BaseModel):
    organization_external_id: str
    customer_id: str
    linked: bool
    workflow_id: str | None = None


class DeletionCheckResponse(BaseModel):
    can_delete: bool
    reason: str | None = None
    has_active_subscription: bool
    cancel_at_period_end: bool
    is_pending_setup: bool
    total_subscriptions: int
    active_subscriptions: int
    current_period_end: datetime | None = None
