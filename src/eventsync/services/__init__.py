"""eventsync services.

- claim_store: claim-based work queue stores (PostgreSQL and in-memory)
- retry: failure classification shared by the workers
- meetings: meeting provider interface, Zoom client, meeting store
- notifications: notification queue and enqueue entry point
- email: SMTP email transport
"""
