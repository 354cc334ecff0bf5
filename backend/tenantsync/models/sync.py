from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, func

from tenantsync.core.base import Base
from tenantsync.core.clock import utcnow
from tenantsync.models.types import JSONBCompat


class SyncEntityType(str, Enum):
    USER = "user"
    ORGANIZATION = "organization"
    SUBSCRIPTION = "subscription"


class SyncRunStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class SyncStatus(Base):
    __tablename__ = "sync_statuses"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(20), nullable=False, index=True)
    entity_id = Column(String(255), nullable=False, index=True)
    target_system = Column(String(50), nullable=False, server_default="analytics", default="analytics")
    status = Column(String(20), nullable=False, server_default=SyncRunStatus.PENDING.value)
    webhook_event = Column(String(100), nullable=True)
    workflow_id = Column(String(64), unique=True, nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)


class DeadLetterEntry(Base):
    __tablename__ = "sync_dead_letters"

    id = Column(Integer, primary_key=True, index=True)
    # One dead letter per logical sync; every retry attempt shares the workflow id.
    workflow_id = Column(String(64), unique=True, nullable=False, index=True)
    entity_type = Column(String(20), nullable=False, index=True)
    entity_id = Column(String(255), nullable=False)
    error = Column(Text, nullable=False)
    context = Column(JSONBCompat, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)
    retryable = Column(Boolean, nullable=False, server_default="true", default=True)
    retry_count = Column(Integer, nullable=False, server_default="0", default=0)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True, index=True)
