"""eventsync ORM models.

Importing this package registers every table with ``Base.metadata``.
"""

from eventsync.db.models.base import (
    Base,
    ClaimMixin,
    MeetingProviderKind,
    WorkStatus,
)
from eventsync.db.models.meetings import Meeting
from eventsync.db.models.notifications import (
    Attachment,
    Notification,
    notification_attachments,
)

__all__ = [
    "Attachment",
    "Base",
    "ClaimMixin",
    "Meeting",
    "MeetingProviderKind",
    "Notification",
    "WorkStatus",
    "notification_attachments",
]
