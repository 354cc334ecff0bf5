from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from tenantsync.core.errors import SyncDependencyNotReady
from tenantsync.models.directory import (
    DEFAULT_USER_METADATA,
    Organization,
    OrganizationDomain,
    OrganizationMembership,
    Role,
    User,
)

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    pass


class DirectoryDependencyMissing(DirectoryError, SyncDependencyNotReady):
    """A membership arrived before its organization or user."""


def field(data: dict[str, Any], snake: str, camel: str | None = None, default: Any = None) -> Any:
    # Webhook payloads use snake_case; some API responses and SDK dumps use camelCase.
    if snake in data and data[snake] is not None:
        return data[snake]
    if camel and camel in data and data[camel] is not None:
        return data[camel]
    return default


class DirectoryService:
    """Local upserts/deletes for identity-provider entities. Every write commits."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def upsert_user(self, data: dict[str, Any]) -> User:
        external_id = data["id"]
        user = self.get_user(external_id)
        if user is None:
            user = User(external_id=external_id, metadata_=dict(DEFAULT_USER_METADATA))
            self.db.add(user)

        user.email = field(data, "email", default=user.email or "")
        user.first_name = field(data, "first_name", "firstName")
        user.last_name = field(data, "last_name", "lastName")
        user.profile_picture_url = field(data, "profile_picture_url", "profilePictureUrl")
        user.email_verified = bool(field(data, "email_verified", "emailVerified", default=False))

        incoming = field(data, "metadata", default={}) or {}
        # Incoming keys win; keys we set locally (e.g. onboarding flags) survive.
        user.metadata_ = {**(user.metadata_ or {}), **incoming}

        self.db.commit()
        self.db.refresh(user)
        return user

    def delete_user(self, external_id: str) -> bool:
        user = self.get_user(external_id)
        if user is None:
            return False
        self.db.query(OrganizationMembership).filter(OrganizationMembership.user_id == user.id).delete(
            synchronize_session=False
        )
        self.db.delete(user)
        self.db.commit()
        return True

    def get_user(self, external_id: str) -> User | None:
        return self.db.query(User).filter(User.external_id == external_id).first()

    # ------------------------------------------------------------------
    # Organizations / domains
    # ------------------------------------------------------------------
    def upsert_organization(self, data: dict[str, Any]) -> Organization:
        external_id = data["id"]
        org = self.get_organization(external_id)
        if org is None:
            org = Organization(external_id=external_id, metadata_={})
            self.db.add(org)

        org.name = field(data, "name", default=org.name or "")
        metadata = field(data, "metadata")
        if metadata is not None:
            org.metadata_ = dict(metadata)
        self.db.flush()

        domains = field(data, "domains")
        if domains is not None:
            self._replace_domains(org, domains)

        self.db.commit()
        self.db.refresh(org)
        return org

    def delete_organization(self, external_id: str) -> bool:
        org = self.get_organization(external_id)
        if org is None:
            return False
        self.db.query(OrganizationDomain).filter(OrganizationDomain.organization_id == org.id).delete(
            synchronize_session=False
        )
        self.db.query(OrganizationMembership).filter(OrganizationMembership.organization_id == org.id).delete(
            synchronize_session=False
        )
        self.db.delete(org)
        self.db.commit()
        return True

    def get_organization(self, external_id: str) -> Organization | None:
        return self.db.query(Organization).filter(Organization.external_id == external_id).first()

    def set_domain_state(self, domain_data: dict[str, Any], state: str) -> OrganizationDomain:
        domain = (
            self.db.query(OrganizationDomain)
            .filter(OrganizationDomain.external_id == domain_data["id"])
            .first()
        )
        if domain is None:
            raise DirectoryError("Domain not found")
        domain.state = state
        self.db.commit()
        return domain

    def _replace_domains(self, org: Organization, domains: list[dict[str, Any]]) -> None:
        seen: set[str] = set()
        existing = {
            d.external_id: d
            for d in self.db.query(OrganizationDomain).filter(OrganizationDomain.organization_id == org.id).all()
        }
        for item in domains:
            domain_id = item.get("id")
            if not domain_id:
                continue
            seen.add(domain_id)
            row = existing.get(domain_id)
            if row is None:
                row = OrganizationDomain(external_id=domain_id, organization_id=org.id)
                self.db.add(row)
            row.domain = item.get("domain") or row.domain or ""
            row.state = item.get("state") or row.state or "pending"
        for domain_id, row in existing.items():
            if domain_id not in seen:
                self.db.delete(row)

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------
    def upsert_membership(self, data: dict[str, Any]) -> OrganizationMembership:
        org_external_id = field(data, "organization_id", "organizationId")
        user_external_id = field(data, "user_id", "userId")
        org = self.get_organization(org_external_id) if org_external_id else None
        user = self.get_user(user_external_id) if user_external_id else None
        if org is None or user is None:
            raise DirectoryDependencyMissing(
                f"Membership {data.get('id')} references unknown organization={org_external_id} or user={user_external_id}"
            )

        membership = (
            self.db.query(OrganizationMembership)
            .filter(
                OrganizationMembership.organization_id == org.id,
                OrganizationMembership.user_id == user.id,
            )
            .first()
        )
        if membership is None:
            membership = OrganizationMembership(organization_id=org.id, user_id=user.id)
            self.db.add(membership)

        role = field(data, "role") or {}
        membership.external_id = data["id"]
        membership.role_slug = role.get("slug") or membership.role_slug or "member"
        membership.permissions = list(field(data, "permissions", default=[]) or [])
        membership.status = field(data, "status", default="active")
        self.db.commit()
        self.db.refresh(membership)
        return membership

    def delete_membership(self, external_id: str) -> bool:
        deleted = (
            self.db.query(OrganizationMembership)
            .filter(OrganizationMembership.external_id == external_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return bool(deleted)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------
    def upsert_role(self, data: dict[str, Any]) -> Role:
        slug = data["slug"]
        role = self.db.query(Role).filter(Role.slug == slug).first()
        if role is None:
            role = Role(slug=slug)
            self.db.add(role)
        role.name = field(data, "name", default=role.name or slug)
        role.description = field(data, "description")
        role.permissions = list(field(data, "permissions", default=[]) or [])
        role.source = "environment"
        self.db.commit()
        self.db.refresh(role)
        return role

    def delete_role(self, slug: str) -> bool:
        deleted = self.db.query(Role).filter(Role.slug == slug).delete(synchronize_session=False)
        self.db.commit()
        return bool(deleted)
