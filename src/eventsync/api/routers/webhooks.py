"""Webhook router for video-conferencing provider callbacks.

This router handles Zoom event notifications:
- endpoint.url_validation: challenge-response used when the endpoint is
  registered or revalidated
- recording.completed: stores the cloud recording share URL on the meeting

Every request is authenticated with Zoom's HMAC signature scheme:
    x-zm-signature = "v0=" + hex(HMAC_SHA256(secret, "v0:{timestamp}:{body}"))
and rejected when x-zm-request-timestamp is too far from the current time.

Reference: https://developers.zoom.us/docs/api/webhooks/
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from eventsync.core.config import Settings, ZoomSettings
from eventsync.services.claim_store import ClaimStoreError
from eventsync.services.meetings.store import MeetingStore

logger = logging.getLogger(__name__)

# Requests whose timestamp is further than this from now are rejected (seconds)
MAX_TIMESTAMP_AGE = 300

EVENT_URL_VALIDATION = "endpoint.url_validation"
EVENT_RECORDING_COMPLETED = "recording.completed"

router = APIRouter(
    prefix="/webhooks",
    tags=["webhooks"],
    responses={
        401: {"description": "Invalid webhook signature"},
        404: {"description": "Provider not configured"},
    },
)


# -----------------------------------------------------------------------------
# Schemas
# -----------------------------------------------------------------------------


class ZoomWebhookEvent(BaseModel):
    """Envelope of a Zoom webhook request."""

    event: str = Field(..., description="Event name, e.g. recording.completed")
    event_ts: int | None = Field(None, description="Event timestamp in milliseconds")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event payload")


class UrlValidationResponse(BaseModel):
    """Challenge response for endpoint.url_validation."""

    plainToken: str  # noqa: N815 - Zoom field name
    encryptedToken: str  # noqa: N815 - Zoom field name


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def get_zoom_settings(request: Request) -> ZoomSettings:
    """Zoom settings from the app state, falling back to the environment."""
    settings: Settings | None = request.app.state.settings
    if settings is None:
        from eventsync.core.settings import get_settings

        settings = get_settings()
    return settings.zoom


def get_meeting_store() -> MeetingStore:
    """Meeting store backed by the shared database engine."""
    return MeetingStore()


ZoomConfigDep = Annotated[ZoomSettings, Depends(get_zoom_settings)]
MeetingStoreDep = Annotated[MeetingStore, Depends(get_meeting_store)]


# -----------------------------------------------------------------------------
# Signature verification
# -----------------------------------------------------------------------------


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Compute the x-zm-signature value for a request body."""
    message = f"v0:{timestamp}:".encode() + body
    digest = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return f"v0={digest}"


def verify_signature(
    secret: str,
    signature: str | None,
    timestamp: str | None,
    body: bytes,
    *,
    now: float | None = None,
) -> bool:
    """Check the signature and freshness of a Zoom webhook request."""
    if not signature or not timestamp:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False

    current = time.time() if now is None else now
    if abs(current - ts) > MAX_TIMESTAMP_AGE:
        return False

    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


# -----------------------------------------------------------------------------
# Endpoint
# -----------------------------------------------------------------------------


@router.post(
    "/zoom",
    summary="Receive a Zoom webhook event",
    responses={400: {"description": "Malformed event body"}},
)
async def zoom_webhook(
    request: Request,
    zoom: ZoomConfigDep,
    store: MeetingStoreDep,
    x_zm_signature: Annotated[str | None, Header()] = None,
    x_zm_request_timestamp: Annotated[str | None, Header()] = None,
) -> dict[str, Any]:
    """Verify and dispatch a Zoom webhook event.

    Unknown events are acknowledged so Zoom does not keep retrying them.
    """
    secret = zoom.webhook_secret_token.get_secret_value()
    if not zoom.enabled or not secret:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Zoom not configured")

    body = await request.body()
    if not verify_signature(secret, x_zm_signature, x_zm_request_timestamp, body):
        logger.warning("Zoom webhook rejected: invalid signature or timestamp")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        event = ZoomWebhookEvent.model_validate(json.loads(body))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event") from e

    logger.info("Zoom webhook received: event=%s", event.event)

    if event.event == EVENT_URL_VALIDATION:
        plain_token = event.payload.get("plainToken")
        if not isinstance(plain_token, str) or not plain_token:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Missing plainToken"
            )
        encrypted = hmac.new(secret.encode(), plain_token.encode(), hashlib.sha256).hexdigest()
        return UrlValidationResponse(plainToken=plain_token, encryptedToken=encrypted).model_dump()

    if event.event == EVENT_RECORDING_COMPLETED:
        await _handle_recording_completed(event, store)

    return {"status": "ok"}


async def _handle_recording_completed(event: ZoomWebhookEvent, store: MeetingStore) -> None:
    obj = event.payload.get("object")
    if not isinstance(obj, dict):
        logger.info("Recording event without an object, ignored")
        return
    meeting_id = obj.get("id")
    share_url = obj.get("share_url")
    if meeting_id is None or not share_url:
        logger.info("Recording event without meeting id or share url, ignored")
        return

    try:
        await store.update_recording_url(str(meeting_id), str(share_url))
    except ClaimStoreError as e:
        logger.error("Failed to store recording url: zoom_id=%s, error=%s", meeting_id, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable"
        ) from e
