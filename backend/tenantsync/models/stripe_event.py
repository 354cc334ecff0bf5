from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, func

from tenantsync.core.base import Base
from tenantsync.core.clock import utcnow


class StripeWebhookEvent(Base):
    __tablename__ = "stripe_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    # Diagnostics only; lets operators correlate refreshes with a customer.
    customer_id = Column(String(255), nullable=True, index=True)
    processed_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
