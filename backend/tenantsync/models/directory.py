# tenantsync/models/directory.py
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import relationship

from tenantsync.core.base import Base
from tenantsync.core.clock import utcnow
from tenantsync.models.types import JSONBCompat

DEFAULT_USER_METADATA = {"onboardingComplete": "false"}


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # Identity provider id (user_...). Every handler upserts by this.
    external_id = Column(String(255), unique=True, index=True, nullable=False)

    email = Column(String(255), index=True, nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    profile_picture_url = Column(String(1024), nullable=True)
    email_verified = Column(Boolean, nullable=False, server_default="false", default=False)
    role = Column(String(50), nullable=False, server_default="user", default="user")
    metadata_ = Column("metadata", JSONBCompat, nullable=False, default=lambda: dict(DEFAULT_USER_METADATA))

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    memberships = relationship("OrganizationMembership", back_populates="user")


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    metadata_ = Column("metadata", JSONBCompat, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    domains = relationship("OrganizationDomain", back_populates="organization")
    memberships = relationship("OrganizationMembership", back_populates="organization")


class OrganizationDomain(Base):
    __tablename__ = "organization_domains"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(255), unique=True, index=True, nullable=False)
    organization_id = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    domain = Column(String(255), nullable=False)
    # pending | verified | failed
    state = Column(String(30), nullable=False, server_default="pending", default="pending")
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    organization = relationship("Organization", back_populates="domains")


class OrganizationMembership(Base):
    __tablename__ = "organization_memberships"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(255), unique=True, index=True, nullable=False)
    organization_id = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_slug = Column(String(100), nullable=False, server_default="member", default="member")
    permissions = Column(JSONBCompat, nullable=False, default=list)
    status = Column(String(30), nullable=False, server_default="active", default="active")

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    organization = relationship("Organization", back_populates="memberships")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_org_membership_org_user"),
    )


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(100), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(String(1024), nullable=True)
    permissions = Column(JSONBCompat, nullable=False, default=list)
    # Roles mirrored from the identity provider are environment-wide.
    source = Column(String(30), nullable=False, server_default="environment", default="environment")
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
