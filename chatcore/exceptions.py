"""
Exception hierarchy for ChatCore.

Only programmer errors (uninitialized store, unknown record kinds, missing
required fields) escape the public API. Send and sync failures are turned
into state transitions and events instead.
"""


class ChatCoreError(Exception):
    """Base exception for ChatCore."""
    pass


class StoreError(ChatCoreError):
    """Represents a failure inside the local store."""
    pass


class StoreNotInitializedError(StoreError):
    """Raised when the store is used before init() has completed."""

    def __init__(self, message: str = "Local store not initialized"):
        super().__init__(message)


class UnknownKindError(StoreError):
    """Raised for a record kind or index the store does not define."""
    pass


class TransportError(ChatCoreError):
    """Represents a local failure to put an intent on the wire."""
    pass


class SyncError(ChatCoreError):
    """Represents an aborted snapshot merge."""

    def __init__(self, message, record_kind=None, record_id=None, *args):
        super().__init__(message, *args)
        self.record_kind = record_kind
        self.record_id = record_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.record_kind:
            details.append(f"kind: {self.record_kind}")
        if self.record_id is not None:
            details.append(f"id: {self.record_id}")
        return f"{base} ({', '.join(details)})" if details else base
