from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base

from tenantsync.core.clock import utcnow

# Separate metadata: these tables live in the analytical store, not the primary database.
AnalyticsBase = declarative_base()


class AnalyticsUser(AnalyticsBase):
    __tablename__ = "analytics_users"

    id = Column(Integer, primary_key=True)
    workos_id = Column(String(255), unique=True, nullable=False, index=True)
    local_id = Column(Integer, nullable=True)
    email = Column(String(255), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class AnalyticsOrganization(AnalyticsBase):
    __tablename__ = "analytics_organizations"

    id = Column(Integer, primary_key=True)
    workos_id = Column(String(255), unique=True, nullable=False, index=True)
    local_id = Column(Integer, nullable=True)
    name = Column(String(255), nullable=True)
    subscription_tier = Column(String(20), nullable=True)
    subscription_status = Column(String(30), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
