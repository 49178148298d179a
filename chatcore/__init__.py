from chatcore.core import ChatCore
from chatcore.events import EventBus
from chatcore.exceptions import (
    ChatCoreError,
    StoreError,
    StoreNotInitializedError,
    SyncError,
    TransportError,
    UnknownKindError,
)
from chatcore.scheduler import MessageScheduler
from chatcore.storage import LocalStore, Transaction
from chatcore.sync import SyncCoordinator
from chatcore.transport import Connection, TransportClient, WebSocketConnection

__all__ = [
    "ChatCore",
    "EventBus",
    "ChatCoreError",
    "StoreError",
    "StoreNotInitializedError",
    "SyncError",
    "TransportError",
    "UnknownKindError",
    "MessageScheduler",
    "LocalStore",
    "Transaction",
    "SyncCoordinator",
    "Connection",
    "TransportClient",
    "WebSocketConnection",
]
