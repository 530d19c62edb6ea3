"""
Alerting core - users, products, notifications, health check runs

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Users (recipient directory)
    op.create_table(
        "users",
        sa.Column("user_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(255)),
        sa.Column("role", sa.String(30), nullable=False, server_default="employee"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_active_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("role IN ('admin', 'manager', 'pharmacist', 'employee')", name="ck_user_role"),
    )
    op.create_index("ix_users_role_active", "users", ["role", "is_active"])

    # 2. Products (fact source)
    op.create_table(
        "products",
        sa.Column("product_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("sku", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("category", sa.String(100)),
        sa.Column("stock_quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reorder_level", sa.Integer),
        sa.Column("expiry_date", sa.Date),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_products_active_stock", "products", ["is_active", "stock_quantity"])
    op.create_index("ix_products_active_expiry", "products", ["is_active", "expiry_date"])

    # 3. Notifications
    op.create_table(
        "notifications",
        sa.Column(
            "notification_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("recipient_id", UUID(as_uuid=True), nullable=False),
        sa.Column("dedup_key", sa.String(64), nullable=False),
        sa.Column("rule_kind", sa.String(30)),
        sa.Column("subject_id", sa.String(64)),
        sa.Column("category", sa.String(20), nullable=False, server_default="inventory"),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("payload", JSONB, server_default=sa.text("'{}'::jsonb")),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime),
        sa.Column("dismissed_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_notification_severity"),
        sa.CheckConstraint("category IN ('inventory', 'expiry', 'system')", name="ck_notification_category"),
    )
    op.create_index("ix_notifications_dedup_lookup", "notifications", ["recipient_id", "dedup_key", "created_at"])
    op.create_index("ix_notifications_recipient_created", "notifications", ["recipient_id", "created_at"])
    # Open (undismissed) rows are the only ones that hold a cooldown
    op.create_index(
        "ix_notifications_open_dedup",
        "notifications",
        ["recipient_id", "dedup_key", "created_at"],
        postgresql_where=sa.text("dismissed_at IS NULL"),
    )

    # 4. Health check runs
    op.create_table(
        "health_check_runs",
        sa.Column("run_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("check_kind", sa.String(30), nullable=False),
        sa.Column("ran_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("notifications_created", sa.Integer, nullable=False, server_default="0"),
        sa.Column("notifications_suppressed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text),
        sa.CheckConstraint("status IN ('running', 'success', 'failed')", name="ck_health_check_run_status"),
    )
    op.create_index("ix_health_check_runs_kind_ran_at", "health_check_runs", ["check_kind", "ran_at"])


def downgrade() -> None:
    op.drop_index("ix_health_check_runs_kind_ran_at", table_name="health_check_runs")
    op.drop_table("health_check_runs")

    op.drop_index("ix_notifications_open_dedup", table_name="notifications")
    op.drop_index("ix_notifications_recipient_created", table_name="notifications")
    op.drop_index("ix_notifications_dedup_lookup", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_products_active_expiry", table_name="products")
    op.drop_index("ix_products_active_stock", table_name="products")
    op.drop_table("products")

    op.drop_index("ix_users_role_active", table_name="users")
    op.drop_table("users")
