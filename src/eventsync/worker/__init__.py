"""eventsync worker service.

Background workers that reconcile meetings with the video-conferencing
provider and deliver queued notifications.
"""

from eventsync.worker.base import ClaimWorker, WorkerConfig
from eventsync.worker.meetings import MeetingSyncWorker
from eventsync.worker.notifications import NotificationDispatchWorker

__all__ = [
    "ClaimWorker",
    "MeetingSyncWorker",
    "NotificationDispatchWorker",
    "WorkerConfig",
]
