"""add notification audit log

Revision ID: 0001_notification_logs
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_notification_logs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One append-only row per notification attempt (sent, failed or skipped).
    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("notification_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_notification_logs_tenant_id", "notification_logs", ["tenant_id"], unique=False)
    op.create_index(
        "ix_notification_logs_notification_type",
        "notification_logs",
        ["notification_type"],
        unique=False,
    )
    op.create_index("ix_notification_logs_status", "notification_logs", ["status"], unique=False)
    # Per-recipient history lookups.
    op.create_index(
        "ix_notification_logs_recipient_created",
        "notification_logs",
        ["recipient_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_notification_logs_recipient_created", table_name="notification_logs")
    op.drop_index("ix_notification_logs_status", table_name="notification_logs")
    op.drop_index("ix_notification_logs_notification_type", table_name="notification_logs")
    op.drop_index("ix_notification_logs_tenant_id", table_name="notification_logs")
    op.drop_table("notification_logs")
