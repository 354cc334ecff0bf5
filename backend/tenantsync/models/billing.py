from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship

from tenantsync.core.base import Base
from tenantsync.core.clock import utcnow


class SubscriptionTier(str, Enum):
    PERSONAL = "personal"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# -1 means unlimited.
TIER_SEAT_LIMITS: dict[str, int] = {
    SubscriptionTier.PERSONAL.value: 1,
    SubscriptionTier.PRO.value: 3,
    SubscriptionTier.ENTERPRISE.value: -1,
}

# Statuses that still bill (or are about to) and therefore block org deletion.
ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due")


class StripeCustomer(Base):
    __tablename__ = "stripe_customers"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stripe_customer_id = Column(String(255), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    organization = relationship("Organization")


class OrganizationSubscription(Base):
    __tablename__ = "organization_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stripe_customer_id = Column(String(255), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_price_id = Column(String(255), nullable=True)

    tier = Column(String(20), nullable=False, server_default=SubscriptionTier.PERSONAL.value)
    # Stripe subscription status, or "none" while checkout is pending.
    status = Column(String(30), nullable=False, server_default="none", index=True)
    billing_interval = Column(String(10), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, server_default="false", default=False)
    cancel_at = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    seat_limit = Column(Integer, nullable=False, server_default="1", default=1)

    payment_method_brand = Column(String(50), nullable=True)
    payment_method_last4 = Column(String(4), nullable=True)

    # Set while checkout is started but not completed; cleared once a real subscription lands.
    pending_checkout_session_id = Column(String(255), nullable=True)
    pending_price_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    organization = relationship("Organization")

    @property
    def is_pending_setup(self) -> bool:
        return bool(self.pending_checkout_session_id) and not self.stripe_subscription_id
