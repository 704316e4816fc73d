"""Initial gateway schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("quota_tier", sa.String(length=32), nullable=False),
        sa.Column("subscription_state", sa.String(length=32), nullable=False),
        sa.Column("subscription", sa.JSON(), nullable=False),
        sa.Column("hours", sa.JSON(), nullable=False),
        sa.Column("fallback_message", sa.String(length=1000), nullable=False),
        sa.Column("responders", sa.JSON(), nullable=False),
        sa.Column("operator_identities", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
    )
    op.create_index("ix_tenants_subscription_state", "tenants", ["subscription_state"])

    op.create_table(
        "tenant_identities",
        sa.Column("identity", sa.String(length=32), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.tenant_id"]),
        sa.PrimaryKeyConstraint("identity"),
    )
    op.create_index("ix_tenant_identities_tenant_id", "tenant_identities", ["tenant_id"])

    op.create_table(
        "connection_status",
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("state", sa.String(length=32), nullable=False),
        sa.Column("last_connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_disconnected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disconnect_reason", sa.String(length=500), nullable=True),
        sa.Column("last_successful_outbound_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_inbound_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
    )

    op.create_table(
        "quota_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("sender", sa.String(length=32), nullable=False),
        sa.Column("hour_key", sa.String(length=16), nullable=False),
        sa.Column("day_key", sa.String(length=16), nullable=False),
        sa.Column("month_key", sa.String(length=8), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_quota_events_tenant_id", "quota_events", ["tenant_id"])
    op.create_index("ix_quota_events_hour_key", "quota_events", ["hour_key"])
    op.create_index("ix_quota_events_day_key", "quota_events", ["day_key"])
    op.create_index("ix_quota_events_month_key", "quota_events", ["month_key"])


def downgrade() -> None:
    op.drop_index("ix_quota_events_month_key", table_name="quota_events")
    op.drop_index("ix_quota_events_day_key", table_name="quota_events")
    op.drop_index("ix_quota_events_hour_key", table_name="quota_events")
    op.drop_index("ix_quota_events_tenant_id", table_name="quota_events")
    op.drop_table("quota_events")
    op.drop_table("connection_status")
    op.drop_index("ix_tenant_identities_tenant_id", table_name="tenant_identities")
    op.drop_table("tenant_identities")
    op.drop_index("ix_tenants_subscription_state", table_name="tenants")
    op.drop_table("tenants")
