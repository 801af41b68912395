"""Meeting provider interface, domain types and error taxonomy.

The meeting sync worker only talks to providers through ``MeetingProvider``;
each vendor gets one implementation registered under its
``MeetingProviderKind``.
"""

from __future__ import annotations

import enum
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from eventsync.db.models.base import MeetingProviderKind

if TYPE_CHECKING:
    from eventsync.db.models.meetings import Meeting

# Duration bounds accepted by the provider, in minutes
MIN_DURATION_MINUTES = 5
MAX_DURATION_MINUTES = 720


class SyncAction(str, enum.Enum):
    """What the sync worker has to do to reconcile a meeting."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class MeetingIntent:
    """Snapshot of a meeting's desired state, taken at claim time."""

    meeting_id: uuid.UUID
    scope_id: str
    topic: str
    starts_at: datetime
    duration_seconds: int
    timezone: str = "UTC"
    provider: MeetingProviderKind = MeetingProviderKind.ZOOM
    provider_meeting_id: str | None = None
    join_url: str | None = None
    password: str | None = None
    recording_url: str | None = None
    last_error: str | None = None
    in_sync: bool = False
    delete_requested: bool = False
    revision: int = 1
    event_id: uuid.UUID | None = None
    session_id: uuid.UUID | None = None

    @property
    def sync_action(self) -> SyncAction:
        """Derive the action: delete wins, then create when never synced."""
        if self.delete_requested:
            return SyncAction.DELETE
        if self.provider_meeting_id is None:
            return SyncAction.CREATE
        return SyncAction.UPDATE

    @classmethod
    def from_row(cls, row: Meeting) -> MeetingIntent:
        """Build an intent from an ORM row."""
        return cls(
            meeting_id=row.meeting_id,
            scope_id=row.scope_id,
            topic=row.topic,
            starts_at=row.starts_at,
            duration_seconds=row.duration_seconds,
            timezone=row.timezone,
            provider=row.provider,
            provider_meeting_id=row.provider_meeting_id,
            join_url=row.join_url,
            password=row.password,
            recording_url=row.recording_url,
            last_error=row.last_error,
            in_sync=row.in_sync,
            delete_requested=row.delete_requested,
            revision=row.revision,
            event_id=row.event_id,
            session_id=row.session_id,
        )


@dataclass(frozen=True)
class ProviderMeeting:
    """Meeting as the provider reports it."""

    id: str
    join_url: str | None = None
    password: str | None = None


# =============================================================================
# Errors
# =============================================================================


class ProviderError(Exception):
    """Base exception for meeting provider errors."""

    pass


class ProviderClientError(ProviderError):
    """The provider rejected the request (4xx other than 401, 403 and 429)."""

    def __init__(self, message: str, *, status_code: int = 400, code: int = 0) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(f"provider client error: status={status_code} code={code}: {message}")


class MeetingNotFoundError(ProviderClientError):
    """The provider does not know the meeting."""

    pass


class InvalidDurationError(ProviderError):
    """Meeting duration is outside the range the provider accepts."""

    def __init__(self, minutes: int) -> None:
        self.minutes = minutes
        super().__init__(
            f"invalid meeting duration: {minutes} minutes "
            f"(allowed {MIN_DURATION_MINUTES}-{MAX_DURATION_MINUTES})"
        )


class ProviderTokenError(ProviderError):
    """Token exchange failed, or the provider rejected the access token."""

    pass


class ProviderRateLimitError(ProviderError):
    """The provider throttled the request (HTTP 429)."""

    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(f"provider rate limit hit, retry after {retry_after:g}s")


class ProviderServerError(ProviderError):
    """The provider failed to process the request (5xx or unexpected status)."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        message = f"provider server error: status={status_code}"
        if body:
            message = f"{message}: {body}"
        super().__init__(message)


class ProviderNetworkError(ProviderError):
    """Transport failure, timeout or undecodable response body."""

    pass


class ProviderNotConfiguredError(ProviderError):
    """No provider is registered for the meeting's provider kind."""

    def __init__(self, kind: MeetingProviderKind) -> None:
        self.kind = kind
        super().__init__(f"provider not configured: {kind.value}")


def validate_duration(duration: timedelta | int) -> int:
    """Convert a duration to whole minutes and check the provider bounds.

    Args:
        duration: Duration as a timedelta or a number of seconds.

    Returns:
        Duration in minutes (seconds are floored).

    Raises:
        InvalidDurationError: If the minutes fall outside the allowed range.
    """
    seconds = int(duration.total_seconds()) if isinstance(duration, timedelta) else int(duration)
    minutes = seconds // 60
    if minutes < MIN_DURATION_MINUTES or minutes > MAX_DURATION_MINUTES:
        raise InvalidDurationError(minutes)
    return minutes


class MeetingProvider(ABC):
    """Interface implemented by every video-conferencing provider client."""

    kind: MeetingProviderKind

    @abstractmethod
    async def create_meeting(self, intent: MeetingIntent) -> ProviderMeeting:
        """Create the meeting on the provider."""

    @abstractmethod
    async def update_meeting(self, provider_meeting_id: str, intent: MeetingIntent) -> None:
        """Push the intent's current state to an existing provider meeting."""

    @abstractmethod
    async def get_meeting(self, provider_meeting_id: str) -> ProviderMeeting:
        """Fetch the provider's view of a meeting."""

    @abstractmethod
    async def delete_meeting(self, provider_meeting_id: str) -> None:
        """Delete a meeting; raises MeetingNotFoundError if it is already gone."""

    async def aclose(self) -> None:  # noqa: B027 - optional hook
        """Release network resources held by the provider."""

    async def __aenter__(self) -> MeetingProvider:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
