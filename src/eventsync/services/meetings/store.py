"""Meeting queue store.

Application code declares meetings here (add, update, delete request) and
the meeting sync worker claims them through the WorkClaimStore contract.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from eventsync.db.models.base import MeetingProviderKind
from eventsync.db.models.meetings import Meeting
from eventsync.services.claim_store import (
    ClaimStoreError,
    MemoryClaimStore,
    MemoryRecord,
    Outcome,
    PgClaimStore,
)
from eventsync.services.meetings.provider import MeetingIntent

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.orm import InstrumentedAttribute
    from sqlalchemy.sql.elements import ColumnElement

logger = logging.getLogger(__name__)

# Fields the application may change on an existing intent
MUTABLE_FIELDS = frozenset({"topic", "starts_at", "duration_seconds", "timezone"})


class MeetingStore(PgClaimStore[MeetingIntent]):
    """PostgreSQL store for meeting intents.

    Create and update work is claimed before deletes within a scope.
    """

    model = Meeting

    @property
    def _id_column(self) -> InstrumentedAttribute[uuid.UUID]:
        return Meeting.meeting_id

    def _claim_order(self) -> Sequence[ColumnElement[Any]]:
        return (Meeting.delete_requested, Meeting.created_at)

    def _to_payload(self, row: Meeting) -> MeetingIntent:
        return MeetingIntent.from_row(row)

    def _on_stale(self, row: Meeting) -> None:
        row.in_sync = False

    def _on_finalized(self, row: Meeting, outcome: Outcome, now: datetime) -> None:
        row.updated_at = now

    # -------------------------------------------------------------------------
    # Application side
    # -------------------------------------------------------------------------

    async def add_intent(
        self,
        scope_id: str,
        topic: str,
        starts_at: datetime,
        duration_seconds: int,
        timezone: str = "UTC",
        provider: MeetingProviderKind = MeetingProviderKind.ZOOM,
        event_id: uuid.UUID | None = None,
        session_id: uuid.UUID | None = None,
    ) -> uuid.UUID:
        """Declare a new meeting; the sync worker will create it.

        Returns:
            The new meeting id.

        Raises:
            ClaimStoreError: If the row cannot be written.
        """
        meeting = Meeting(
            meeting_id=uuid.uuid4(),
            scope_id=scope_id,
            topic=topic,
            starts_at=starts_at,
            duration_seconds=duration_seconds,
            timezone=timezone,
            provider=provider,
            event_id=event_id,
            session_id=session_id,
            in_sync=False,
            delete_requested=False,
        )
        try:
            async with self.session_factory() as session:
                session.add(meeting)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to add meeting intent: scope=%s, error=%s", scope_id, e)
            raise ClaimStoreError(f"Failed to add meeting intent: {e}") from e

        logger.info(
            "Meeting intent added: meeting_id=%s, scope=%s, provider=%s",
            meeting.meeting_id,
            scope_id,
            provider.value,
        )
        return meeting.meeting_id

    async def _modify(self, meeting_id: uuid.UUID, changes: dict[str, Any]) -> bool:
        try:
            async with self.session_factory() as session:
                row = await session.scalar(
                    select(Meeting).where(Meeting.meeting_id == meeting_id).with_for_update()
                )
                if row is None:
                    return False
                for name, value in changes.items():
                    setattr(row, name, value)
                row.mark_out_of_sync()
                row.updated_at = datetime.now(UTC)
                await session.commit()
                return True
        except SQLAlchemyError as e:
            logger.error("Failed to modify meeting %s: %s", meeting_id, e)
            raise ClaimStoreError(f"Failed to modify meeting {meeting_id}: {e}") from e

    async def update_intent(self, meeting_id: uuid.UUID, **changes: Any) -> bool:
        """Change topic, schedule or timezone of a meeting.

        Returns:
            False if the meeting does not exist.

        Raises:
            ValueError: If a field is not user-editable.
        """
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            msg = f"Cannot update meeting fields: {sorted(unknown)}"
            raise ValueError(msg)
        updated = await self._modify(meeting_id, changes)
        if updated:
            logger.info("Meeting intent updated: meeting_id=%s, fields=%s", meeting_id, sorted(changes))
        return updated

    async def request_delete(self, meeting_id: uuid.UUID) -> bool:
        """Ask for the meeting to be removed from the provider and purged."""
        deleted = await self._modify(meeting_id, {"delete_requested": True})
        if deleted:
            logger.info("Meeting delete requested: meeting_id=%s", meeting_id)
        return deleted

    async def get(self, meeting_id: uuid.UUID) -> MeetingIntent | None:
        """Load the current state of a meeting."""
        try:
            async with self.session_factory() as session:
                row = await session.get(Meeting, meeting_id)
                return MeetingIntent.from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise ClaimStoreError(f"Failed to load meeting {meeting_id}: {e}") from e

    async def update_recording_url(self, provider_meeting_id: str, recording_url: str) -> bool:
        """Store the recording share URL reported by the provider.

        Returns:
            True if a meeting with that provider id exists.
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Meeting)
                    .where(Meeting.provider_meeting_id == provider_meeting_id)
                    .values(recording_url=recording_url, updated_at=datetime.now(UTC))
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to store recording url: zoom_id=%s, error=%s", provider_meeting_id, e)
            raise ClaimStoreError(f"Failed to store recording url: {e}") from e

        found = bool(result.rowcount)
        if found:
            logger.info("Recording url stored: provider_meeting_id=%s", provider_meeting_id)
        else:
            logger.warning("Recording for unknown meeting: provider_meeting_id=%s", provider_meeting_id)
        return found


def _memory_intent(record: MemoryRecord) -> MeetingIntent:
    return MeetingIntent.from_row(record)  # type: ignore[arg-type]


def memory_meeting_store(**kwargs: Any) -> MemoryClaimStore[MeetingIntent]:
    """In-process meeting store with the same claim semantics as MeetingStore.

    Records are added with ``add(scope, topic=..., starts_at=..., duration_seconds=...)``.
    """
    return MemoryClaimStore(
        _memory_intent,
        id_field="meeting_id",
        defaults={
            "timezone": "UTC",
            "provider": MeetingProviderKind.ZOOM,
            "provider_meeting_id": None,
            "join_url": None,
            "password": None,
            "recording_url": None,
            "in_sync": False,
            "delete_requested": False,
            "event_id": None,
            "session_id": None,
        },
        sort_key=lambda r: (r.delete_requested, r.seq),
        stale_changes={"in_sync": False},
        **kwargs,
    )
