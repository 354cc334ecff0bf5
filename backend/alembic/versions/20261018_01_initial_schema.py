"""Initial schema: directory, billing, event ledger, sync tracking, analytics mirror.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _jsonb():
    return postgresql.JSONB(astext_type=sa.Text())


def _timestamps(with_created: bool = True) -> list[sa.Column]:
    cols = []
    if with_created:
        cols.append(sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False))
    cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False))
    return cols


def upgrade() -> None:
    # --- Directory ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("profile_picture_url", sa.String(length=1024), nullable=True),
        sa.Column("email_verified", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("role", sa.String(length=50), server_default="user", nullable=False),
        sa.Column("metadata", _jsonb(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_users_external_id", "users", ["external_id"], unique=True)
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("metadata", _jsonb(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_organizations_external_id", "organizations", ["external_id"], unique=True)

    op.create_table(
        "organization_domains",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column(
            "organization_id",
            sa.Integer(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("domain", sa.String(length=255), nullable=False),
        sa.Column("state", sa.String(length=30), server_default="pending", nullable=False),
        *_timestamps(with_created=False),
    )
    op.create_index("ix_organization_domains_external_id", "organization_domains", ["external_id"], unique=True)
    op.create_index("ix_organization_domains_organization_id", "organization_domains", ["organization_id"])

    op.create_table(
        "organization_memberships",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column(
            "organization_id",
            sa.Integer(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role_slug", sa.String(length=100), server_default="member", nullable=False),
        sa.Column("permissions", _jsonb(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("status", sa.String(length=30), server_default="active", nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_org_membership_org_user"),
    )
    op.create_index(
        "ix_organization_memberships_external_id", "organization_memberships", ["external_id"], unique=True
    )
    op.create_index("ix_organization_memberships_organization_id", "organization_memberships", ["organization_id"])
    op.create_index("ix_organization_memberships_user_id", "organization_memberships", ["user_id"])

    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=1024), nullable=True),
        sa.Column("permissions", _jsonb(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("source", sa.String(length=30), server_default="environment", nullable=False),
        *_timestamps(with_created=False),
    )
    op.create_index("ix_roles_slug", "roles", ["slug"], unique=True)

    # --- Billing ---
    op.create_table(
        "stripe_customers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.Integer(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_stripe_customers_organization_id", "stripe_customers", ["organization_id"])
    op.create_index("ix_stripe_customers_stripe_customer_id", "stripe_customers", ["stripe_customer_id"], unique=True)

    op.create_table(
        "organization_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.Integer(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_price_id", sa.String(length=255), nullable=True),
        sa.Column("tier", sa.String(length=20), server_default="personal", nullable=False),
        sa.Column("status", sa.String(length=30), server_default="none", nullable=False),
        sa.Column("billing_interval", sa.String(length=10), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("cancel_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seat_limit", sa.Integer(), server_default="1", nullable=False),
        sa.Column("payment_method_brand", sa.String(length=50), nullable=True),
        sa.Column("payment_method_last4", sa.String(length=4), nullable=True),
        sa.Column("pending_checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("pending_price_id", sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_organization_subscriptions_organization_id", "organization_subscriptions", ["organization_id"])
    op.create_index(
        "ix_organization_subscriptions_stripe_customer_id", "organization_subscriptions", ["stripe_customer_id"]
    )
    op.create_index(
        "ix_organization_subscriptions_stripe_subscription_id",
        "organization_subscriptions",
        ["stripe_subscription_id"],
        unique=True,
    )
    op.create_index("ix_organization_subscriptions_status", "organization_subscriptions", ["status"])

    op.create_table(
        "stripe_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index(
        "ix_stripe_webhook_events_stripe_event_id", "stripe_webhook_events", ["stripe_event_id"], unique=True
    )
    op.create_index("ix_stripe_webhook_events_customer_id", "stripe_webhook_events", ["customer_id"])

    # --- Identity event ledger ---
    op.create_table(
        "processed_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_processed_events_event_id", "processed_events", ["event_id"], unique=True)
    op.create_index("ix_processed_events_processed_at", "processed_events", ["processed_at"])

    op.create_table(
        "event_cursors",
        sa.Column("key", sa.String(length=50), primary_key=True),
        sa.Column("cursor", sa.String(length=255), nullable=True),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_processed_event_id", sa.String(length=255), nullable=True),
        *_timestamps(with_created=False),
    )

    op.create_table(
        "event_failures",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("payload", _jsonb(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default="1", nullable=False),
        sa.Column("first_failed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_event_failures_event_id", "event_failures", ["event_id"], unique=True)
    op.create_index("ix_event_failures_last_failed_at", "event_failures", ["last_failed_at"])

    # --- Cross-system sync ---
    op.create_table(
        "sync_statuses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("target_system", sa.String(length=50), server_default="analytics", nullable=False),
        sa.Column("status", sa.String(length=20), server_default="pending", nullable=False),
        sa.Column("webhook_event", sa.String(length=100), nullable=True),
        sa.Column("workflow_id", sa.String(length=64), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_sync_statuses_workflow_id", "sync_statuses", ["workflow_id"], unique=True)
    op.create_index("ix_sync_statuses_entity_type", "sync_statuses", ["entity_type"])
    op.create_index("ix_sync_statuses_entity_id", "sync_statuses", ["entity_id"])
    op.create_index("ix_sync_statuses_started_at", "sync_statuses", ["started_at"])

    op.create_table(
        "sync_dead_letters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("error", sa.Text(), nullable=False),
        sa.Column("context", _jsonb(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("retryable", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_dead_letters_workflow_id", "sync_dead_letters", ["workflow_id"], unique=True)
    op.create_index("ix_sync_dead_letters_entity_type", "sync_dead_letters", ["entity_type"])
    op.create_index("ix_sync_dead_letters_created_at", "sync_dead_letters", ["created_at"])
    op.create_index("ix_sync_dead_letters_resolved_at", "sync_dead_letters", ["resolved_at"])

    # --- Analytics mirror (same database unless ANALYTICS_DATABASE_URL points elsewhere) ---
    op.create_table(
        "analytics_users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workos_id", sa.String(length=255), nullable=False),
        sa.Column("local_id", sa.Integer(), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_analytics_users_workos_id", "analytics_users", ["workos_id"], unique=True)

    op.create_table(
        "analytics_organizations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workos_id", sa.String(length=255), nullable=False),
        sa.Column("local_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("subscription_tier", sa.String(length=20), nullable=True),
        sa.Column("subscription_status", sa.String(length=30), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_analytics_organizations_workos_id", "analytics_organizations", ["workos_id"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_analytics_organizations_workos_id", table_name="analytics_organizations")
    op.drop_table("analytics_organizations")
    op.drop_index("ix_analytics_users_workos_id", table_name="analytics_users")
    op.drop_table("analytics_users")

    op.drop_table("sync_dead_letters")
    op.drop_table("sync_statuses")
    op.drop_table("event_failures")
    op.drop_table("event_cursors")
    op.drop_table("processed_events")
    op.drop_table("stripe_webhook_events")
    op.drop_table("organization_subscriptions")
    op.drop_table("stripe_customers")
    op.drop_table("roles")
    op.drop_table("organization_memberships")
    op.drop_table("organization_domains")
    op.drop_table("organizations")
    op.drop_table("users")
