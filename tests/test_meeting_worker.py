"""Tests for the meeting sync worker.

The worker runs against the in-memory meeting store and a real ZoomClient
talking to a scripted httpx.MockTransport.
"""

from datetime import UTC, datetime

import httpx
import pytest

from eventsync.db.models.base import MeetingProviderKind, WorkStatus
from eventsync.services.meetings.provider import MeetingProvider, ProviderMeeting
from eventsync.services.meetings.store import memory_meeting_store
from eventsync.services.meetings.zoom import ZoomClient
from eventsync.worker.base import WorkerConfig
from eventsync.worker.meetings import MeetingSyncWorker

STARTS_AT = datetime(2026, 5, 4, 18, 30, tzinfo=UTC)


@pytest.fixture
def store(wall_clock):
    return memory_meeting_store(clock=wall_clock)


@pytest.fixture
def worker_config():
    return WorkerConfig(worker_id="meetings-1", pause_on_none=0.01, pause_on_error=30)


@pytest.fixture
async def zoom(zoom_config, zoom_api, fake_clock):
    async with ZoomClient(zoom_config, transport=zoom_api.transport(), clock=fake_clock) as client:
        yield client


@pytest.fixture
def worker(store, zoom, worker_config, fake_clock):
    return MeetingSyncWorker(
        store, {MeetingProviderKind.ZOOM: zoom}, worker_config, clock=fake_clock
    )


async def _add(store, **fields):
    values = {"topic": "Monthly meetup", "starts_at": STARTS_AT, "duration_seconds": 45 * 60}
    values.update(fields)
    return await store.add("group-1", **values)


class TestCreate:
    """Tests for first-time sync."""

    @pytest.mark.asyncio
    async def test_create_stores_provider_state(self, worker, store, zoom_api):
        """Test a new intent ends in sync with the provider's id, url and password."""
        zoom_api.responses[("POST", "/users/me/meetings")] = httpx.Response(
            201, json={"id": 987, "join_url": "https://zoom.us/j/987", "password": "abc123"}
        )
        meeting_id = await _add(store)

        handled = await worker.run_once()

        record = store.get(meeting_id)
        assert handled == 1
        assert record.status is WorkStatus.DONE
        assert record.provider_meeting_id == "987"
        assert record.join_url == "https://zoom.us/j/987"
        assert record.password == "abc123"
        assert record.in_sync is True
        assert record.last_error is None
        assert zoom_api.last_json()["duration"] == 45
        assert worker.items_succeeded == 1

    @pytest.mark.asyncio
    async def test_invalid_duration_fails_without_network(self, worker, store, zoom_api):
        """Test an out-of-range duration is a terminal failure with no provider call."""
        meeting_id = await _add(store, duration_seconds=60)

        await worker.run_once()

        record = store.get(meeting_id)
        assert record.status is WorkStatus.FAILED
        assert "invalid meeting duration" in record.last_error
        assert zoom_api.token_requests == []
        assert zoom_api.api_requests == []
        assert worker.items_failed == 1

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self, worker, store, zoom_api):
        zoom_api.responses[("POST", "/users/me/meetings")] = httpx.Response(
            400, json={"code": 300, "message": "Invalid parameter: start_time"}
        )
        meeting_id = await _add(store)

        await worker.run_once()

        record = store.get(meeting_id)
        assert record.status is WorkStatus.FAILED
        assert "Invalid parameter: start_time" in record.last_error
        assert await store.scopes() == []

    @pytest.mark.asyncio
    async def test_missing_provider_is_terminal(self, store, worker_config, fake_clock):
        """Test a meeting whose provider is not configured fails permanently."""
        worker = MeetingSyncWorker(store, {}, worker_config, clock=fake_clock)
        meeting_id = await _add(store)

        await worker.run_once()

        record = store.get(meeting_id)
        assert record.status is WorkStatus.FAILED
        assert record.last_error == "provider not configured: zoom"


class TestRetries:
    """Tests for retryable provider failures."""

    @pytest.mark.asyncio
    async def test_rate_limit_delays_item(self, worker, store, zoom_api, wall_clock, fake_clock):
        """Test a 429 leaves the item pending with not_before set from Retry-After."""
        zoom_api.responses[("POST", "/users/me/meetings")] = httpx.Response(
            429, json={"code": 429, "message": "slow down"}, headers={"Retry-After": "30"}
        )
        meeting_id = await _add(store)

        await worker.run_once()

        record = store.get(meeting_id)
        assert record.status is WorkStatus.PENDING
        assert (record.not_before - wall_clock.now).total_seconds() == 30
        assert "rate limit" in record.last_error
        assert worker.items_retried == 1

        # Hidden by the store until the delay passes
        assert await worker.run_once() == 0
        wall_clock.advance(30)
        fake_clock.advance(30)
        zoom_api.responses[("POST", "/users/me/meetings")] = httpx.Response(
            201, json={"id": 987, "join_url": "https://zoom.us/j/987", "password": "x"}
        )
        assert await worker.run_once() == 1
        assert store.get(meeting_id).attempts == 2

    @pytest.mark.asyncio
    async def test_server_error_cools_scope_down(self, worker, store, zoom_api, fake_clock):
        """Test a 5xx is retried only after the worker's error pause."""
        zoom_api.responses[("POST", "/users/me/meetings")] = httpx.Response(502, text="bad gateway")
        meeting_id = await _add(store)

        await worker.run_once()

        record = store.get(meeting_id)
        assert record.status is WorkStatus.PENDING
        assert record.not_before is None
        assert "status=502" in record.last_error

        # Store would hand it out, but the worker skips the scope for now
        assert await worker.run_once() == 0

        fake_clock.advance(30)
        zoom_api.responses[("POST", "/users/me/meetings")] = httpx.Response(
            201, json={"id": 987, "join_url": "https://zoom.us/j/987", "password": "x"}
        )
        assert await worker.run_once() == 1
        assert store.get(meeting_id).status is WorkStatus.DONE

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self, worker, store, zoom_api):
        def refuse(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        zoom_api.responses[("POST", "/users/me/meetings")] = refuse
        meeting_id = await _add(store)

        await worker.run_once()

        assert store.get(meeting_id).status is WorkStatus.PENDING


class TestUpdate:
    """Tests for re-syncing an existing meeting."""

    @pytest.mark.asyncio
    async def test_update_patches_then_reads_back(self, worker, store, zoom_api):
        """Test an update sends PATCH then GET and stores the fresh join url."""
        zoom_api.responses[("PATCH", "/meetings/987")] = httpx.Response(204)
        zoom_api.responses[("GET", "/meetings/987")] = httpx.Response(
            200, json={"id": 987, "join_url": "https://zoom.us/j/987?pwd=new", "password": "new"}
        )
        meeting_id = await _add(
            store, topic="Renamed", provider_meeting_id="987", join_url="https://zoom.us/j/987"
        )

        await worker.run_once()

        record = store.get(meeting_id)
        assert [r.method for r in zoom_api.api_requests] == ["PATCH", "GET"]
        assert zoom_api.api_requests[0].url.path.endswith("/meetings/987")
        assert record.join_url == "https://zoom.us/j/987?pwd=new"
        assert record.password == "new"
        assert record.in_sync is True
        assert record.status is WorkStatus.DONE


class TestDelete:
    """Tests for delete requests."""

    @pytest.mark.asyncio
    async def test_delete_purges_record(self, worker, store, zoom_api):
        zoom_api.responses[("DELETE", "/meetings/987")] = httpx.Response(204)
        meeting_id = await _add(store, provider_meeting_id="987", delete_requested=True)

        await worker.run_once()

        assert store.get(meeting_id) is None
        assert zoom_api.api_requests[0].method == "DELETE"

    @pytest.mark.asyncio
    async def test_already_deleted_meeting_counts_as_done(self, worker, store, zoom_api):
        """Test Zoom code 3001 on delete still purges the record."""
        zoom_api.responses[("DELETE", "/meetings/987")] = httpx.Response(
            404, json={"code": 3001, "message": "Meeting does not exist: 987."}
        )
        meeting_id = await _add(store, provider_meeting_id="987", delete_requested=True)

        await worker.run_once()

        assert store.get(meeting_id) is None
        assert worker.items_succeeded == 1

    @pytest.mark.asyncio
    async def test_never_synced_meeting_is_purged_without_calls(self, worker, store, zoom_api):
        meeting_id = await _add(store, delete_requested=True)

        await worker.run_once()

        assert store.get(meeting_id) is None
        assert zoom_api.api_requests == []


class ChangingProvider(MeetingProvider):
    """Provider that lets the application edit the meeting mid-request."""

    kind = MeetingProviderKind.ZOOM

    def __init__(self, store, meeting_id):
        self.store = store
        self.meeting_id = meeting_id
        self.calls = []

    async def create_meeting(self, intent):
        self.calls.append(("create", intent.topic))
        if len(self.calls) == 1:
            await self.store.update(self.meeting_id, topic="Changed while creating")
        return ProviderMeeting(id="987", join_url="https://zoom.us/j/987", password="p")

    async def update_meeting(self, provider_meeting_id, intent):
        self.calls.append(("update", intent.topic))

    async def get_meeting(self, provider_meeting_id):
        return ProviderMeeting(id=provider_meeting_id, join_url="https://zoom.us/j/987", password="p")

    async def delete_meeting(self, provider_meeting_id):
        self.calls.append(("delete", provider_meeting_id))


class TestConcurrentChange:
    """Tests for application changes racing a sync."""

    @pytest.mark.asyncio
    async def test_change_during_create_triggers_update(self, store, worker_config, fake_clock):
        """Test the provider id is kept and the newer topic is pushed as an update."""
        meeting_id = await _add(store)
        provider = ChangingProvider(store, meeting_id)
        worker = MeetingSyncWorker(
            store, {MeetingProviderKind.ZOOM: provider}, worker_config, clock=fake_clock
        )

        await worker.run_once()

        record = store.get(meeting_id)
        assert record.status is WorkStatus.PENDING
        assert record.provider_meeting_id == "987"
        assert record.in_sync is False

        await worker.run_once()

        assert provider.calls == [
            ("create", "Monthly meetup"),
            ("update", "Changed while creating"),
        ]
        record = store.get(meeting_id)
        assert record.status is WorkStatus.DONE
        assert record.in_sync is True
