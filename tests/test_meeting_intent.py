"""Tests for meeting intents and the provider registry."""

from eventsync.core.config import ZoomSettings
from eventsync.db.models.base import MeetingProviderKind, WorkStatus
from eventsync.db.models.meetings import Meeting
from eventsync.services.meetings import SyncAction, build_providers
from eventsync.services.meetings.zoom import ZoomClient


class TestSyncAction:
    """Tests for deriving the sync action from an intent."""

    def test_new_meeting_is_created(self, make_intent):
        assert make_intent().sync_action is SyncAction.CREATE

    def test_synced_meeting_is_updated(self, make_intent):
        assert make_intent(provider_meeting_id="987").sync_action is SyncAction.UPDATE

    def test_delete_wins(self, make_intent):
        intent = make_intent(provider_meeting_id="987", delete_requested=True)
        assert intent.sync_action is SyncAction.DELETE

    def test_delete_of_never_synced_meeting(self, make_intent):
        assert make_intent(delete_requested=True).sync_action is SyncAction.DELETE


class TestMarkOutOfSync:
    """Tests for Meeting.mark_out_of_sync."""

    def test_done_meeting_is_reopened(self):
        meeting = Meeting(status=WorkStatus.DONE, in_sync=True, revision=3)

        meeting.mark_out_of_sync()

        assert meeting.status is WorkStatus.PENDING
        assert meeting.in_sync is False
        assert meeting.revision == 4

    def test_claimed_meeting_keeps_its_claim(self):
        meeting = Meeting(status=WorkStatus.CLAIMED, in_sync=False, revision=1)

        meeting.mark_out_of_sync()

        assert meeting.status is WorkStatus.CLAIMED
        assert meeting.revision == 2


class TestBuildProviders:
    """Tests for build_providers."""

    def test_disabled_zoom_is_not_registered(self):
        assert build_providers(ZoomSettings(enabled=False)) == {}

    def test_enabled_zoom_is_registered(self):
        providers = build_providers(
            ZoomSettings(
                enabled=True, account_id="acct-123", client_id="client-abc", client_secret="s3cret"
            )
        )

        assert list(providers) == [MeetingProviderKind.ZOOM]
        assert isinstance(providers[MeetingProviderKind.ZOOM], ZoomClient)
        assert providers[MeetingProviderKind.ZOOM].max_participants == 100
