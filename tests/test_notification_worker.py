"""Tests for the notification dispatch worker and the enqueue side.

Tests cover:
- One send per notification, with all recipients and attachments
- Recipient whitelist filtering
- Attachment deduplication by content digest
- Failure classification (missing attachment, permanent and transient SMTP errors)
"""

from unittest.mock import AsyncMock

import pytest

from eventsync.db.models.base import WorkStatus
from eventsync.services.claim_store import MemoryClaimStore, Outcome
from eventsync.services.email import (
    EmailAttachment,
    EmailPermanentError,
    EmailTransientError,
    EmailTransport,
)
from eventsync.services.notifications import (
    MemoryNotificationStore,
    NewAttachment,
    NewNotification,
    NotificationQueue,
    NotificationsManager,
    NotificationStore,
)
from eventsync.worker.base import WorkerConfig
from eventsync.worker.notifications import NotificationDispatchWorker

INVITE = NewAttachment(
    file_name="invite.ics",
    content_type="text/calendar",
    data=b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n",
)


@pytest.fixture
def store(wall_clock):
    return MemoryNotificationStore(clock=wall_clock)


@pytest.fixture
def manager(store):
    return NotificationsManager(store)


@pytest.fixture
def transport():
    transport = AsyncMock(spec=EmailTransport)
    transport.send.return_value = "<abc@events.example.com>"
    return transport


@pytest.fixture
def worker_config():
    return WorkerConfig(worker_id="notifications-1", pause_on_none=0.01, pause_on_error=10)


@pytest.fixture
def worker(store, transport, worker_config, fake_clock):
    return NotificationDispatchWorker(store, transport, worker_config, clock=fake_clock)


def _notification(recipients=None, attachments=None, **overrides):
    values = {
        "kind": "event-published",
        "recipients": recipients if recipients is not None else ["ana@example.com"],
        "subject": "New event: Monthly meetup",
        "body": b"<p>See you there</p>",
        "attachments": attachments or [],
    }
    values.update(overrides)
    return NewNotification(**values)


class TestNotificationsManager:
    """Tests for the enqueue entry point."""

    @pytest.mark.asyncio
    async def test_enqueue_without_recipients_writes_nothing(self, manager, store):
        assert await manager.enqueue("group-1", _notification(recipients=[])) is None
        assert await manager.enqueue("group-1", _notification(recipients=["  "])) is None
        assert store.records() == []

    @pytest.mark.asyncio
    async def test_duplicate_recipients_are_collapsed(self, manager, store):
        notification_id = await manager.enqueue(
            "group-1",
            _notification(recipients=["ana@example.com", " ana@example.com", "luis@example.com"]),
        )

        record = store.get(notification_id)
        assert record.recipients == ["ana@example.com", "luis@example.com"]
        assert record.status is WorkStatus.PENDING

    @pytest.mark.asyncio
    async def test_attachment_content_is_stored_once(self, manager, store):
        """Test identical attachment bytes share one stored attachment."""
        first = await manager.enqueue("group-1", _notification(attachments=[INVITE, INVITE]))
        second = await manager.enqueue("group-2", _notification(attachments=[INVITE]))

        first_ids = store.get(first).attachment_ids
        second_ids = store.get(second).attachment_ids
        assert len(first_ids) == 1
        assert first_ids == second_ids
        assert len(store.attachments) == 1


class TestDispatch:
    """Tests for sending claimed notifications."""

    @pytest.mark.asyncio
    async def test_sends_once_to_all_recipients(self, worker, manager, store, transport):
        """Test one message carries every recipient and the attachment."""
        notification_id = await manager.enqueue(
            "group-1",
            _notification(
                recipients=["ana@example.com", "luis@example.com"], attachments=[INVITE]
            ),
        )

        assert await worker.run_once() == 1

        transport.send.assert_awaited_once()
        (message,) = transport.send.await_args.args
        assert message.recipients == ["ana@example.com", "luis@example.com"]
        assert message.subject == "New event: Monthly meetup"
        assert message.body == b"<p>See you there</p>"
        assert message.attachments == [
            EmailAttachment(
                file_name="invite.ics",
                content_type="text/calendar",
                data=b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n",
            )
        ]

        record = store.get(notification_id)
        assert record.status is WorkStatus.DONE
        assert record.processed_at is not None

        # Nothing left to send
        assert await worker.run_once() == 0
        transport.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_finalize_of_same_claim_is_ignored(self, manager, store):
        await manager.enqueue("group-1", _notification())
        item = await store.claim_next("group-1", "notifications-1")

        assert await store.finalize(item, Outcome.succeeded()) is True
        assert await store.finalize(item, Outcome.succeeded()) is False

    @pytest.mark.asyncio
    async def test_one_notification_per_scope_at_a_time(self, worker, manager, transport):
        await manager.enqueue("group-1", _notification(subject="first"))
        await manager.enqueue("group-1", _notification(subject="second"))

        assert await worker.run_once() == 1
        assert await worker.run_once() == 1

        subjects = [call.args[0].subject for call in transport.send.await_args_list]
        assert subjects == ["first", "second"]


class TestWhitelist:
    """Tests for the recipient whitelist."""

    @pytest.mark.asyncio
    async def test_only_whitelisted_recipients_receive(
        self, store, manager, transport, worker_config, fake_clock
    ):
        worker = NotificationDispatchWorker(
            store,
            transport,
            worker_config,
            rcpts_whitelist=["Ana@Example.com"],
            clock=fake_clock,
        )
        await manager.enqueue(
            "group-1", _notification(recipients=["ana@example.com", "luis@example.com"])
        )

        await worker.run_once()

        (message,) = transport.send.await_args.args
        assert message.recipients == ["ana@example.com"]

    @pytest.mark.asyncio
    async def test_empty_whitelist_blocks_everybody(
        self, store, manager, transport, worker_config, fake_clock
    ):
        """Test a notification with no allowed recipients is completed unsent."""
        worker = NotificationDispatchWorker(
            store, transport, worker_config, rcpts_whitelist=[], clock=fake_clock
        )
        notification_id = await manager.enqueue("group-1", _notification())

        await worker.run_once()

        transport.send.assert_not_awaited()
        assert store.get(notification_id).status is WorkStatus.DONE


class TestFailures:
    """Tests for failure handling."""

    @pytest.mark.asyncio
    async def test_missing_attachment_is_terminal(self, worker, manager, store, transport):
        notification_id = await manager.enqueue("group-1", _notification(attachments=[INVITE]))
        (attachment_id,) = store.get(notification_id).attachment_ids
        store.attachments[attachment_id] = None

        await worker.run_once()

        record = store.get(notification_id)
        assert record.status is WorkStatus.FAILED
        assert "attachment content missing" in record.last_error
        assert record.processed_at is not None
        transport.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_permanent_smtp_error_is_terminal(self, worker, manager, store, transport):
        transport.send.side_effect = EmailPermanentError("All recipients refused")
        notification_id = await manager.enqueue("group-1", _notification())

        await worker.run_once()

        record = store.get(notification_id)
        assert record.status is WorkStatus.FAILED
        assert record.last_error == "All recipients refused"

    @pytest.mark.asyncio
    async def test_transient_smtp_error_is_retried(
        self, worker, manager, store, transport, fake_clock
    ):
        """Test a transient failure is retried after the worker's error pause."""
        transport.send.side_effect = [EmailTransientError("SMTP error: 421"), "<ok@x>"]
        notification_id = await manager.enqueue("group-1", _notification())

        await worker.run_once()

        record = store.get(notification_id)
        assert record.status is WorkStatus.PENDING
        assert record.last_error == "SMTP error: 421"
        assert record.processed_at is None

        assert await worker.run_once() == 0
        fake_clock.advance(10)
        assert await worker.run_once() == 1

        record = store.get(notification_id)
        assert record.status is WorkStatus.DONE
        assert record.attempts == 2
        assert record.last_error is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retried(self, worker, manager, store, transport):
        transport.send.side_effect = RuntimeError("boom")
        notification_id = await manager.enqueue("group-1", _notification())

        await worker.run_once()

        record = store.get(notification_id)
        assert record.status is WorkStatus.PENDING
        assert record.last_error == "boom"
        assert worker.items_retried == 1


class TestNotificationQueue:
    """Tests for the store contract the dispatch worker relies on."""

    def test_stores_implement_the_queue(self):
        assert issubclass(NotificationStore, NotificationQueue)
        assert issubclass(MemoryNotificationStore, NotificationQueue)

    def test_store_without_attachment_loading_cannot_be_built(self):
        class ClaimOnlyStore(MemoryClaimStore, NotificationQueue):
            async def enqueue(self, scope, notification):
                return await self.add(scope)

        with pytest.raises(TypeError, match="load_attachments"):
            ClaimOnlyStore(lambda record: record)

    def test_worker_loads_attachments_from_its_store(self, worker, store):
        assert worker.queue is store
        assert worker.store is store
