"""Zoom REST API client (Server-to-Server OAuth).

This module provides the Zoom implementation of ``MeetingProvider``:
- Account-credentials token exchange with an in-memory, single-flight cache
- Meeting create/update/get/delete
- Mapping of HTTP outcomes onto the provider error taxonomy

Reference: https://developers.zoom.us/docs/internal-apps/s2s-oauth/
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC
from typing import TYPE_CHECKING, Any

import httpx

from eventsync.db.models.base import MeetingProviderKind
from eventsync.services.meetings.provider import (
    MeetingIntent,
    MeetingNotFoundError,
    MeetingProvider,
    ProviderClientError,
    ProviderMeeting,
    ProviderNetworkError,
    ProviderRateLimitError,
    ProviderServerError,
    ProviderTokenError,
    validate_duration,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from eventsync.core.config import ZoomSettings

logger = logging.getLogger(__name__)

BASE_URL = "https://api.zoom.us/v2"
TOKEN_URL = "https://zoom.us/oauth/token"

# Fixed timeout for every Zoom call (seconds)
HTTP_TIMEOUT = 20.0

# Delay used when a 429 carries no usable Retry-After header (seconds)
DEFAULT_RATE_LIMIT_RETRY = 60.0

# Cached tokens are never handed out this close to expiry (seconds)
TOKEN_EXPIRY_MARGIN = 300.0

# Zoom error code for "meeting does not exist"
ZOOM_MEETING_NOT_FOUND = 3001

# Scheduled meeting
MEETING_TYPE_SCHEDULED = 2

DEFAULT_MEETING_SETTINGS: dict[str, Any] = {
    "auto_recording": "cloud",
    "jbh_time": 15,
    "join_before_host": True,
    "mute_upon_entry": True,
    "participant_video": False,
    "waiting_room": False,
}


@dataclass(frozen=True)
class ZoomConfig:
    """Configuration for the Zoom client."""

    account_id: str
    client_id: str
    client_secret: str
    host_user_id: str = "me"
    base_url: str = BASE_URL
    token_url: str = TOKEN_URL
    timeout: float = HTTP_TIMEOUT
    max_participants: int = 100

    @classmethod
    def from_settings(cls, settings: ZoomSettings) -> ZoomConfig:
        """Create config from the application settings."""
        return cls(
            account_id=settings.account_id,
            client_id=settings.client_id,
            client_secret=settings.client_secret.get_secret_value(),
            host_user_id=settings.host_user_id,
            base_url=settings.base_url,
            token_url=settings.token_url,
            timeout=settings.timeout,
            max_participants=settings.max_participants,
        )


@dataclass(frozen=True)
class CachedToken:
    """Access token and its absolute expiry on the client's clock."""

    access_token: str
    expires_at: float


class ZoomClient(MeetingProvider):
    """Client for the Zoom meetings API.

    One instance is shared by all sync workers of a process. The access
    token lives only in memory; concurrent callers that find it stale wait
    on one lock so a single exchange refreshes it for everybody.

    Example usage:
        async with ZoomClient(ZoomConfig.from_settings(settings.zoom)) as zoom:
            meeting = await zoom.create_meeting(intent)
    """

    kind = MeetingProviderKind.ZOOM

    def __init__(
        self,
        config: ZoomConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            config: Zoom credentials and endpoints.
            transport: Optional httpx transport (tests use httpx.MockTransport).
            clock: Monotonic clock used for token expiry.
        """
        self._config = config
        self._transport = transport
        self._clock = clock
        self._client: httpx.AsyncClient | None = None
        self._token: CachedToken | None = None
        self._token_lock = asyncio.Lock()

    @property
    def max_participants(self) -> int:
        """Participant cap of the configured Zoom plan."""
        return self._config.max_participants

    async def __aenter__(self) -> ZoomClient:
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=self._config.timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not in context."""
        if self._client is None:
            msg = "ZoomClient must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    # -------------------------------------------------------------------------
    # Token lifecycle
    # -------------------------------------------------------------------------

    def _is_fresh(self, token: CachedToken) -> bool:
        return self._clock() + TOKEN_EXPIRY_MARGIN < token.expires_at

    async def get_token(self) -> str:
        """Return a valid access token, exchanging credentials if needed.

        Raises:
            ProviderTokenError: The exchange was rejected or returned garbage.
            ProviderNetworkError: The token endpoint could not be reached.
        """
        token = self._token
        if token is not None and self._is_fresh(token):
            return token.access_token

        async with self._token_lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if token is not None and self._is_fresh(token):
                return token.access_token

            self._token = await self._request_token()
            return self._token.access_token

    async def _request_token(self) -> CachedToken:
        """Perform the account_credentials grant."""
        client = self._get_client()
        try:
            response = await client.post(
                self._config.token_url,
                auth=httpx.BasicAuth(self._config.client_id, self._config.client_secret),
                data={
                    "grant_type": "account_credentials",
                    "account_id": self._config.account_id,
                },
            )
        except httpx.HTTPError as e:
            raise ProviderNetworkError(f"Cannot reach Zoom token endpoint: {e}") from e

        if not response.is_success:
            raise ProviderTokenError(
                f"Zoom token exchange failed: status={response.status_code}: {response.text}"
            )

        try:
            data = response.json()
            access_token = str(data["access_token"])
            expires_in = float(data["expires_in"])
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderTokenError(f"Invalid Zoom token response: {e}") from e

        logger.info("Zoom access token refreshed: expires_in=%ds", int(expires_in))
        return CachedToken(access_token=access_token, expires_at=self._clock() + expires_in)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send an authenticated request and map failures to provider errors."""
        client = self._get_client()
        token = await self.get_token()

        try:
            response = await client.request(
                method,
                url,
                json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise ProviderNetworkError(f"Zoom request failed: {method} {url}: {e}") from e

        if response.is_success:
            return response

        raise self._error_from_response(response)

    def _error_from_response(self, response: httpx.Response) -> Exception:
        """Translate a non-success response into the matching provider error."""
        status = response.status_code

        if status == 429:
            return ProviderRateLimitError(_parse_retry_after(response))

        if status in (401, 403):
            # Token was revoked or lacks scopes; drop it so the next call re-exchanges
            self._token = None
            return ProviderTokenError(f"Zoom rejected access token: status={status}")

        if 400 <= status < 500:
            code, message = _parse_error_body(response)
            if code == ZOOM_MEETING_NOT_FOUND:
                return MeetingNotFoundError(message, status_code=status, code=code)
            return ProviderClientError(message, status_code=status, code=code)

        return ProviderServerError(status, response.text)

    @staticmethod
    def _meeting_url(provider_meeting_id: str) -> str:
        """Build the URL of one meeting; Zoom meeting ids are numeric."""
        if not provider_meeting_id.isdigit():
            raise ProviderClientError(
                f"invalid Zoom meeting id: {provider_meeting_id!r}", status_code=400
            )
        return f"/meetings/{provider_meeting_id}"

    @staticmethod
    def _parse_meeting(response: httpx.Response) -> ProviderMeeting:
        try:
            data = response.json()
            return ProviderMeeting(
                id=str(data["id"]),
                join_url=data.get("join_url"),
                password=data.get("password"),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderNetworkError(f"Invalid Zoom meeting response: {e}") from e

    # -------------------------------------------------------------------------
    # MeetingProvider
    # -------------------------------------------------------------------------

    async def create_meeting(self, intent: MeetingIntent) -> ProviderMeeting:
        """Create a scheduled meeting hosted by the configured user.

        Raises:
            InvalidDurationError: Duration out of bounds (no request is sent).
            ProviderError: Any provider failure.
        """
        payload = _meeting_payload(intent)
        payload["type"] = MEETING_TYPE_SCHEDULED
        payload["default_password"] = True

        response = await self._request(
            "POST", f"/users/{self._config.host_user_id}/meetings", json=payload
        )
        meeting = self._parse_meeting(response)

        logger.info(
            "Zoom meeting created: meeting_id=%s, zoom_id=%s",
            intent.meeting_id,
            meeting.id,
        )
        return meeting

    async def update_meeting(self, provider_meeting_id: str, intent: MeetingIntent) -> None:
        """Push topic, schedule and settings to an existing meeting."""
        url = self._meeting_url(provider_meeting_id)
        payload = _meeting_payload(intent)
        await self._request("PATCH", url, json=payload)

        logger.info(
            "Zoom meeting updated: meeting_id=%s, zoom_id=%s",
            intent.meeting_id,
            provider_meeting_id,
        )

    async def get_meeting(self, provider_meeting_id: str) -> ProviderMeeting:
        """Fetch a meeting."""
        response = await self._request("GET", self._meeting_url(provider_meeting_id))
        return self._parse_meeting(response)

    async def delete_meeting(self, provider_meeting_id: str) -> None:
        """Delete a meeting.

        Raises:
            MeetingNotFoundError: The meeting no longer exists.
        """
        await self._request("DELETE", self._meeting_url(provider_meeting_id))
        logger.info("Zoom meeting deleted: zoom_id=%s", provider_meeting_id)


def _meeting_payload(intent: MeetingIntent) -> dict[str, Any]:
    """Fields shared by create and update requests."""
    payload: dict[str, Any] = {
        "duration": validate_duration(intent.duration_seconds),
        "settings": dict(DEFAULT_MEETING_SETTINGS),
        "start_time": intent.starts_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "topic": intent.topic,
    }
    if intent.timezone:
        payload["timezone"] = intent.timezone
    return payload


def _parse_retry_after(response: httpx.Response) -> float:
    """Read Retry-After as whole seconds, falling back to the default delay."""
    value = response.headers.get("Retry-After", "").strip()
    if value.isdigit():
        return float(value)
    return DEFAULT_RATE_LIMIT_RETRY


def _parse_error_body(response: httpx.Response) -> tuple[int, str]:
    """Extract Zoom's ``{code, message}`` error body, tolerating anything else."""
    try:
        data = response.json()
    except ValueError:
        return 0, response.text
    if not isinstance(data, dict):
        return 0, response.text
    code = data.get("code", 0)
    message = data.get("message", "")
    return (code if isinstance(code, int) else 0), str(message)
