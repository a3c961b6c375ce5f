"""create notifications, email preferences and email logs

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("related_to", sa.String(length=32), nullable=False),
        sa.Column("related_id", sa.Uuid(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notifications_user_unread",
        "notifications",
        ["user_id", "is_read", "created_at"],
        unique=False,
    )
    op.create_index("ix_notifications_related", "notifications", ["related_to", "related_id"], unique=False)

    op.create_table(
        "email_preferences",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("task_assignments", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("task_overdue", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("task_escalations", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("opportunity_updates", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("opportunity_won", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("daily_digest", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("weekly_digest", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("email_frequency", sa.String(length=20), nullable=False, server_default="immediate"),
        sa.Column("digest_time", sa.String(length=5), nullable=False, server_default="08:00"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "email_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("recipient_email", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("template_name", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("message_id", sa.String(length=255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_email_logs_recipient", "email_logs", ["recipient_email", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_email_logs_recipient", table_name="email_logs")
    op.drop_table("email_logs")
    op.drop_table("email_preferences")
    op.drop_index("ix_notifications_related", table_name="notifications")
    op.drop_index("ix_notifications_user_unread", table_name="notifications")
    op.drop_table("notifications")
