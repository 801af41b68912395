"""Notification and attachment models.

Notifications are queued by request handlers and delivered by the
notification dispatch worker. Attachment content is stored once per
distinct SHA-256 digest and shared between notifications.
"""

from __future__ import annotations

import uuid

from sqlalchemy import Column, ForeignKey, Integer, LargeBinary, String, Table, Text
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from eventsync.db.models.base import (
    Base,
    ClaimMixin,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)

notification_attachments = Table(
    "notification_attachments",
    Base.metadata,
    Column(
        "notification_id",
        UUID(as_uuid=True),
        ForeignKey("notifications.notification_id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "attachment_id",
        UUID(as_uuid=True),
        ForeignKey("attachments.attachment_id", ondelete="RESTRICT"),
        primary_key=True,
    ),
    Column("position", Integer, nullable=False, default=0),
)


class Attachment(Base):
    """Attachment content, deduplicated by SHA-256 digest."""

    __tablename__ = "attachments"

    attachment_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    sha256: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)


class Notification(ClaimMixin, Base):
    """One outbound email queued for delivery."""

    __tablename__ = "notifications"

    notification_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    processed_at: Mapped[OptionalTimestampTZ]

    # Free-form label, e.g. 'event-published' or 'group-welcome'
    kind: Mapped[str] = mapped_column(String(100), nullable=False)

    recipients: Mapped[list[str]] = mapped_column(ARRAY(String(320)), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    body_content_type: Mapped[str] = mapped_column(
        String(100), nullable=False, default="text/html; charset=utf-8"
    )

    attachments: Mapped[list[Attachment]] = relationship(
        secondary=notification_attachments,
        order_by=notification_attachments.c.position,
        lazy="raise",
    )

    def attachment_ids(self) -> list[uuid.UUID]:
        """Return attachment ids in attachment order (requires loaded relationship)."""
        return [a.attachment_id for a in self.attachments]
