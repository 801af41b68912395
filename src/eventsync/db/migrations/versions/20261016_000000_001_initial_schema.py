"""Initial schema with the worker-owned queue tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-16 00:00:00.000000+00:00

Creates:
- meetings (meeting intents and their provider reconciliation state)
- notifications (queued outbound email)
- attachments, notification_attachments (deduplicated attachment content)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _claim_columns() -> list[sa.Column]:
    """Columns shared by every claimable table."""
    work_status = postgresql.ENUM(
        "pending", "claimed", "done", "failed", name="work_status", create_type=False
    )
    return [
        sa.Column("scope_id", sa.String(length=255), nullable=False),
        sa.Column("status", work_status, server_default="pending", nullable=False),
        sa.Column("claim_token", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("claimed_by", sa.String(length=255), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("not_before", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("revision", sa.Integer(), server_default="1", nullable=False),
    ]


def upgrade() -> None:
    """Apply migration: Initial schema with the queue tables."""
    work_status = postgresql.ENUM(
        "pending", "claimed", "done", "failed", name="work_status", create_type=False
    )
    work_status.create(op.get_bind(), checkfirst=True)

    meeting_provider = postgresql.ENUM("zoom", name="meeting_provider", create_type=False)
    meeting_provider.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "meetings",
        sa.Column(
            "meeting_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("session_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("topic", sa.String(length=200), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("provider", meeting_provider, nullable=False),
        sa.Column("provider_meeting_id", sa.String(length=64), nullable=True),
        sa.Column("join_url", sa.Text(), nullable=True),
        sa.Column("password", sa.String(length=64), nullable=True),
        sa.Column("recording_url", sa.Text(), nullable=True),
        sa.Column("in_sync", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("delete_requested", sa.Boolean(), server_default=sa.false(), nullable=False),
        *_claim_columns(),
        sa.PrimaryKeyConstraint("meeting_id", name=op.f("pk_meetings")),
    )
    op.create_index("ix_meetings_scope_status", "meetings", ["scope_id", "status"])
    op.create_index("ix_meetings_provider_meeting_id", "meetings", ["provider_meeting_id"])
    op.create_index("ix_meetings_lease_expires_at", "meetings", ["lease_expires_at"])

    op.create_table(
        "attachments",
        sa.Column(
            "attachment_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("content_type", sa.String(length=255), nullable=False),
        sa.Column("data", sa.LargeBinary(), nullable=True),
        sa.PrimaryKeyConstraint("attachment_id", name=op.f("pk_attachments")),
        sa.UniqueConstraint("sha256", name=op.f("uq_attachments_sha256")),
    )

    op.create_table(
        "notifications",
        sa.Column(
            "notification_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("kind", sa.String(length=100), nullable=False),
        sa.Column("recipients", postgresql.ARRAY(sa.String(length=320)), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("body", sa.LargeBinary(), nullable=False),
        sa.Column("body_content_type", sa.String(length=100), nullable=False),
        *_claim_columns(),
        sa.PrimaryKeyConstraint("notification_id", name=op.f("pk_notifications")),
    )
    op.create_index("ix_notifications_scope_status", "notifications", ["scope_id", "status"])
    op.create_index(
        "ix_notifications_lease_expires_at", "notifications", ["lease_expires_at"]
    )

    op.create_table(
        "notification_attachments",
        sa.Column("notification_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("attachment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(
            ["notification_id"],
            ["notifications.notification_id"],
            name=op.f("fk_notification_attachments_notification_id_notifications"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["attachment_id"],
            ["attachments.attachment_id"],
            name=op.f("fk_notification_attachments_attachment_id_attachments"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint(
            "notification_id", "attachment_id", name=op.f("pk_notification_attachments")
        ),
    )


def downgrade() -> None:
    """Revert migration: Initial schema with the queue tables."""
    op.drop_table("notification_attachments")
    op.drop_table("notifications")
    op.drop_table("attachments")
    op.drop_table("meetings")

    op.execute("DROP TYPE IF EXISTS meeting_provider")
    op.execute("DROP TYPE IF EXISTS work_status")
