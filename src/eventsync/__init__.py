"""eventsync - external-integration worker for the community events platform.

Reconciles declared meetings against the video-conferencing provider and
delivers queued email notifications. Both run as claim-and-execute workers
over PostgreSQL-backed queues.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
