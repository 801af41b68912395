"""Meeting providers and the meeting queue store."""

from __future__ import annotations

from typing import TYPE_CHECKING

from eventsync.services.meetings.provider import (
    MAX_DURATION_MINUTES,
    MIN_DURATION_MINUTES,
    InvalidDurationError,
    MeetingIntent,
    MeetingNotFoundError,
    MeetingProvider,
    ProviderClientError,
    ProviderError,
    ProviderMeeting,
    ProviderNetworkError,
    ProviderNotConfiguredError,
    ProviderRateLimitError,
    ProviderServerError,
    ProviderTokenError,
    SyncAction,
    validate_duration,
)

if TYPE_CHECKING:
    from eventsync.core.config import ZoomSettings
    from eventsync.db.models.base import MeetingProviderKind

__all__ = [
    "MAX_DURATION_MINUTES",
    "MIN_DURATION_MINUTES",
    "InvalidDurationError",
    "MeetingIntent",
    "MeetingNotFoundError",
    "MeetingProvider",
    "ProviderClientError",
    "ProviderError",
    "ProviderMeeting",
    "ProviderNetworkError",
    "ProviderNotConfiguredError",
    "ProviderRateLimitError",
    "ProviderServerError",
    "ProviderTokenError",
    "SyncAction",
    "build_providers",
    "validate_duration",
]


def build_providers(zoom: ZoomSettings) -> dict[MeetingProviderKind, MeetingProvider]:
    """Build the provider registry from settings.

    Disabled providers are left out; meetings that need them fail with
    ProviderNotConfiguredError.
    """
    from eventsync.services.meetings.zoom import ZoomClient, ZoomConfig

    providers: dict[MeetingProviderKind, MeetingProvider] = {}
    if zoom.enabled:
        client = ZoomClient(ZoomConfig.from_settings(zoom))
        providers[client.kind] = client
    return providers
