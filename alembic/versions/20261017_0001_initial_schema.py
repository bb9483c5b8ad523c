"""initial readshare schema

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None

ENUMS = {
    "apiscope": ("user", "service", "support", "admin"),
    "access_request_status": ("pending", "accepted", "declined"),
    "reading_permission_status": ("active", "blocked"),
    "notification_kind": ("metric_update", "access_request", "access_granted", "access_declined"),
    "delivery_status": ("pending", "processing", "sent", "failed"),
}


def _enum(name: str) -> sa.Enum:
    # PostgreSQL types are created once up front; notification_kind is shared by two tables.
    if op.get_bind().dialect.name == "postgresql":
        return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)
    return sa.Enum(*ENUMS[name], name=name)


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, values in ENUMS.items():
            postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "user_profiles",
        *_base_columns(),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "api_keys",
        *_base_columns(),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("prefix", sa.String(length=16), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("scope", _enum("apiscope"), nullable=False),
        sa.Column(
            "user_id",
            sa.String(length=32),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_api_keys_prefix", "api_keys", ["prefix"])
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])

    op.create_table(
        "access_requests",
        *_base_columns(),
        sa.Column("requester_id", sa.String(length=32), sa.ForeignKey("user_profiles.id"), nullable=False),
        sa.Column("owner_id", sa.String(length=32), sa.ForeignKey("user_profiles.id"), nullable=False),
        sa.Column("status", _enum("access_request_status"), nullable=False),
        sa.Column("message", sa.String(length=500), nullable=True),
        sa.CheckConstraint("requester_id <> owner_id", name="ck_access_requests_not_self"),
    )
    op.create_index("ix_access_requests_requester_id", "access_requests", ["requester_id"])
    op.create_index("ix_access_requests_owner_id", "access_requests", ["owner_id"])
    op.create_index(
        "uq_access_requests_pending_pair",
        "access_requests",
        ["requester_id", "owner_id"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "reading_permissions",
        *_base_columns(),
        sa.Column("viewer_id", sa.String(length=32), sa.ForeignKey("user_profiles.id"), nullable=False),
        sa.Column("owner_id", sa.String(length=32), sa.ForeignKey("user_profiles.id"), nullable=False),
        sa.Column("status", _enum("reading_permission_status"), nullable=False),
        sa.UniqueConstraint("viewer_id", "owner_id", name="uq_reading_permissions_pair"),
        sa.CheckConstraint("viewer_id <> owner_id", name="ck_reading_permissions_not_self"),
    )
    op.create_index("ix_reading_permissions_viewer_id", "reading_permissions", ["viewer_id"])
    op.create_index("ix_reading_permissions_owner_id", "reading_permissions", ["owner_id"])

    op.create_table(
        "notifications",
        *_base_columns(),
        sa.Column(
            "user_id",
            sa.String(length=32),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "subject_id",
            sa.String(length=32),
            sa.ForeignKey("user_profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("kind", _enum("notification_kind"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])

    op.create_table(
        "queued_deliveries",
        *_base_columns(),
        sa.Column(
            "recipient_user_id",
            sa.String(length=32),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "notification_id",
            sa.String(length=32),
            sa.ForeignKey("notifications.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("kind", _enum("notification_kind"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("status", _enum("delivery_status"), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.CheckConstraint("attempts >= 0", name="ck_queued_deliveries_attempts_non_negative"),
    )
    op.create_index("ix_queued_deliveries_recipient_user_id", "queued_deliveries", ["recipient_user_id"])
    op.create_index("ix_queued_deliveries_status_created", "queued_deliveries", ["status", "created_at"])

    op.create_table(
        "audit_logs",
        *_base_columns(),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "scheduler_locks",
        *_base_columns(),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_queued_deliveries_status_created", table_name="queued_deliveries")
    op.drop_index("ix_queued_deliveries_recipient_user_id", table_name="queued_deliveries")
    op.drop_table("queued_deliveries")
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_reading_permissions_owner_id", table_name="reading_permissions")
    op.drop_index("ix_reading_permissions_viewer_id", table_name="reading_permissions")
    op.drop_table("reading_permissions")
    op.drop_index("uq_access_requests_pending_pair", table_name="access_requests")
    op.drop_index("ix_access_requests_owner_id", table_name="access_requests")
    op.drop_index("ix_access_requests_requester_id", table_name="access_requests")
    op.drop_table("access_requests")
    op.drop_index("ix_api_keys_user_id", table_name="api_keys")
    op.drop_index("ix_api_keys_prefix", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_table("user_profiles")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, values in reversed(list(ENUMS.items())):
            postgresql.ENUM(*values, name=name).drop(bind, checkfirst=True)
