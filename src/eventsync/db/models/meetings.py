"""Meeting model: desired state of one provider-hosted virtual session.

The application writes intents; the meeting sync worker reconciles them
with the provider and writes back the provider-side identifiers.
"""

from __future__ import annotations

import uuid
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventsync.db.models.base import (
    Base,
    ClaimMixin,
    MeetingProviderKind,
    TimestampTZ,
    UUIDPrimaryKey,
    WorkStatus,
)


class Meeting(ClaimMixin, Base):
    """One meeting intent and its reconciliation state."""

    __tablename__ = "meetings"

    meeting_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Owning event or session in the platform (one of them is set)
    event_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    session_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    topic: Mapped[str] = mapped_column(String(200), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    provider: Mapped[MeetingProviderKind] = mapped_column(
        Enum(
            MeetingProviderKind,
            name="meeting_provider",
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=MeetingProviderKind.ZOOM,
    )

    # Provider-side state, filled by the sync worker
    provider_meeting_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    join_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    password: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Filled by the recording.completed webhook
    recording_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    in_sync: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delete_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        # Claim query: eligible rows of one scope
        Index("ix_meetings_scope_status", "scope_id", "status"),
        Index("ix_meetings_provider_meeting_id", "provider_meeting_id"),
        Index("ix_meetings_lease_expires_at", "lease_expires_at"),
    )

    def mark_out_of_sync(self) -> None:
        """Flag the row for another sync pass after an application-side change."""
        self.in_sync = False
        self.revision += 1
        if self.status in (WorkStatus.DONE, WorkStatus.FAILED):
            self.status = WorkStatus.PENDING
            self.not_before = None
