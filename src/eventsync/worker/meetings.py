"""Meeting sync worker.

Reconciles meeting intents with their provider:
- create: provider meeting is created, its id, join URL and password stored
- update: provider meeting is patched, then re-read for join URL and password
- delete: provider meeting is removed (already-gone counts as done), then
  the local record is purged
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from eventsync.services.claim_store import Outcome
from eventsync.services.meetings.provider import (
    MeetingIntent,
    MeetingNotFoundError,
    ProviderNotConfiguredError,
    SyncAction,
)
from eventsync.worker.base import ClaimWorker

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from eventsync.db.models.base import MeetingProviderKind
    from eventsync.services.claim_store import ClaimedItem, WorkClaimStore
    from eventsync.services.meetings.provider import MeetingProvider
    from eventsync.worker.base import WorkerConfig

logger = logging.getLogger(__name__)


class MeetingSyncWorker(ClaimWorker[MeetingIntent]):
    """Claims meeting intents and applies them on the provider."""

    kind = "meeting"

    def __init__(
        self,
        store: WorkClaimStore[MeetingIntent],
        providers: Mapping[MeetingProviderKind, MeetingProvider],
        config: WorkerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(store, config, clock=clock)
        self.providers = providers

    def _provider_for(self, intent: MeetingIntent) -> MeetingProvider:
        provider = self.providers.get(intent.provider)
        if provider is None:
            raise ProviderNotConfiguredError(intent.provider)
        return provider

    async def process(self, item: ClaimedItem[MeetingIntent]) -> Outcome:
        intent = item.payload
        action = intent.sync_action
        logger.info(
            "Syncing meeting: meeting_id=%s, scope=%s, action=%s, attempt=%d",
            intent.meeting_id,
            item.scope,
            action.value,
            item.attempt,
        )

        if action is SyncAction.DELETE:
            return await self._delete(intent)
        if action is SyncAction.CREATE:
            return await self._create(intent)
        return await self._update(intent)

    async def _create(self, intent: MeetingIntent) -> Outcome:
        provider = self._provider_for(intent)
        meeting = await provider.create_meeting(intent)
        return Outcome.succeeded(
            {
                "provider_meeting_id": meeting.id,
                "join_url": meeting.join_url,
                "password": meeting.password,
                "in_sync": True,
            }
        )

    async def _update(self, intent: MeetingIntent) -> Outcome:
        provider = self._provider_for(intent)
        provider_meeting_id = intent.provider_meeting_id
        if provider_meeting_id is None:
            return Outcome.terminal("cannot update meeting without a provider meeting id")

        await provider.update_meeting(provider_meeting_id, intent)
        # PATCH returns no body; join URL and password may have changed
        meeting = await provider.get_meeting(provider_meeting_id)
        return Outcome.succeeded(
            {
                "join_url": meeting.join_url,
                "password": meeting.password,
                "in_sync": True,
            }
        )

    async def _delete(self, intent: MeetingIntent) -> Outcome:
        provider_meeting_id = intent.provider_meeting_id
        if provider_meeting_id is not None:
            provider = self._provider_for(intent)
            try:
                await provider.delete_meeting(provider_meeting_id)
            except MeetingNotFoundError:
                logger.info(
                    "Meeting already gone on provider: meeting_id=%s, provider_meeting_id=%s",
                    intent.meeting_id,
                    provider_meeting_id,
                )

        # If the record changed meanwhile it is kept, minus the provider state
        return Outcome.succeeded(
            {
                "provider_meeting_id": None,
                "join_url": None,
                "password": None,
                "in_sync": False,
            },
            purge=True,
        )
