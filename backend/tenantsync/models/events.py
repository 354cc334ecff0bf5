from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, Text, func

from tenantsync.core.base import Base
from tenantsync.core.clock import utcnow
from tenantsync.models.types import JSONBCompat


class ProcessedEvent(Base):
    """One row per identity-provider event id that was handled successfully."""

    __tablename__ = "processed_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)


class EventCursor(Base):
    __tablename__ = "event_cursors"

    # Singleton row; only "main" is ever written.
    key = Column(String(50), primary_key=True, default="main")
    cursor = Column(String(255), nullable=True)
    last_polled_at = Column(DateTime(timezone=True), nullable=True)
    last_processed_event_id = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class EventFailure(Base):
    """Events whose handler raised. Cleared once the same event id processes cleanly."""

    __tablename__ = "event_failures"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    source = Column(String(20), nullable=False)
    payload = Column(JSONBCompat, nullable=False)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, server_default="1", default=1)
    first_failed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_failed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
