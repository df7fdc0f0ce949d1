from __future__ import annotations


class AttendeeMirrorError(Exception):
    pass


class ConfigurationError(AttendeeMirrorError):
    pass


class CursorResolutionError(AttendeeMirrorError):
    pass


class SyncTokenExpiredError(AttendeeMirrorError):
    """The stored sync token was rejected (HTTP 410) and a full sync is required."""


class MissingSelfAttendeeError(AttendeeMirrorError):
    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event has attendees but no self attendee: {event_id}")
        self.event_id = event_id


class UpdateConflictError(AttendeeMirrorError):
    def __init__(self, event_id: str, etag: str) -> None:
        super().__init__(f"Event changed since it was listed: {event_id} (If-Match {etag})")
        self.event_id = event_id
        self.etag = etag
