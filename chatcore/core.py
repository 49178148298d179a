import logging
from typing import Any, Callable, Optional

from chatcore.config import Settings, get_settings
from chatcore.events import EventBus
from chatcore.scheduler import MessageScheduler
from chatcore.schemas import (
    ConversationSchema,
    ConversationUserSchema,
    DraftMessageSchema,
    MessageSchema,
    MessageStatus,
    NewMessage,
    UserSchema,
)
from chatcore.storage import (
    CONVERSATION_USERS,
    CONVERSATIONS,
    DRAFT_MESSAGES,
    MESSAGES,
    USERS,
    LocalStore,
    Transaction,
)
from chatcore.sync import SyncCoordinator
from chatcore.transport import Connection, TransportClient, WebSocketConnection
from chatcore.utils import now_ms

logger = logging.getLogger(__name__)


class ChatCore:
    """
    Entry point wiring the store, event bus, scheduler, transport and sync.

    Every component receives its collaborators explicitly, so several
    independent instances can run side by side (e.g. in tests).
    """

    def __init__(self, store: LocalStore, connection: Connection, bus: Optional[EventBus] = None,
                 settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.store = store
        self.connection = connection
        self.bus = bus or EventBus()
        self.scheduler = MessageScheduler(
            store,
            self.bus,
            backoff_base=settings.RETRY_BACKOFF_BASE_SECONDS,
            backoff_max=settings.RETRY_BACKOFF_MAX_SECONDS,
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            blocking_retries=settings.SCHEDULER_BLOCKING_RETRIES,
        )
        self.sync = SyncCoordinator(store, self.bus, connection, interval_seconds=settings.SYNC_INTERVAL_SECONDS)
        self.transport = TransportClient(connection, store, self.bus, self.sync)
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ChatCore":
        """Build a ChatCore on SQLite and a websocket connection."""
        settings = settings or get_settings()
        store = LocalStore(settings.DATABASE_URL)
        connection = WebSocketConnection(
            settings.SERVER_URL,
            reconnect_interval=settings.RECONNECT_INTERVAL_SECONDS,
            heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
        )
        return cls(store, connection, settings=settings)

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        if self._initialized:
            logger.debug("ChatCore already initialized")
            return
        await self.store.init()
        # Transport must be listening before the scheduler replays queued sends
        self.transport.register()
        await self.scheduler.init()
        self._initialized = True
        logger.info("ChatCore initialized")

    async def start(self) -> None:
        await self.connection.connect()
        self.sync.start()

    async def close(self) -> None:
        await self.sync.stop()
        await self.scheduler.stop()
        await self.connection.close()
        await self.bus.drain()
        await self.store.close()
        self._initialized = False
        logger.info("ChatCore closed")

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.bus.subscribe(event, handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        self.bus.unsubscribe(event, handler)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def send_message(self, conversation_id: int, sender_id: int, content: str) -> int:
        """
        Store a new outbound message and queue it for delivery.

        The message and its send request are written in one transaction.
        Delivery problems surface later through the message status and
        events, never as exceptions from this call.

        Returns:
            The id of the stored message
        """
        new_message = NewMessage(conversation_id=conversation_id, sender_id=sender_id, content=content)

        async def create(tx: Transaction) -> MessageSchema:
            message = await tx.upsert(MESSAGES, {
                **new_message.model_dump(),
                "status": MessageStatus.SENDING.value,
                "created_at": now_ms(),
            })
            await self.scheduler.create_request(tx, message.id)
            return message

        message = await self.store.run_transaction(create)
        self.scheduler.enqueue(message.id)
        logger.info(f"Queued message {message.id} for conversation {conversation_id}")
        return message.id

    async def get_message(self, message_id: int) -> Optional[MessageSchema]:
        return await self.store.get(MESSAGES, message_id)

    async def get_messages(self, conversation_id: int) -> list[MessageSchema]:
        return await self.store.get_all_by_index(MESSAGES, "by-conversation", conversation_id)

    # -------------------------------------------------------------------------
    # Conversations and users
    # -------------------------------------------------------------------------

    async def get_conversations(self) -> list[ConversationSchema]:
        return await self.store.get_all(CONVERSATIONS)

    async def get_conversation_users(self, conversation_id: int) -> list[ConversationUserSchema]:
        return await self.store.get_all_by_index(CONVERSATION_USERS, "by-conversation", conversation_id)

    async def get_user(self, user_id: int) -> Optional[UserSchema]:
        return await self.store.get(USERS, user_id)

    # -------------------------------------------------------------------------
    # Drafts
    # -------------------------------------------------------------------------

    async def save_draft_message(self, conversation_id: int, content: str) -> DraftMessageSchema:
        return await self.store.upsert(DRAFT_MESSAGES, {"conversation_id": conversation_id, "content": content})

    async def get_draft_message(self, conversation_id: int) -> Optional[DraftMessageSchema]:
        drafts = await self.store.get_all_by_index(DRAFT_MESSAGES, "by-conversation", conversation_id)
        return drafts[0] if drafts else None

    async def delete_draft_message(self, conversation_id: int) -> bool:
        draft = await self.get_draft_message(conversation_id)
        if draft is None:
            return False
        return await self.store.delete(DRAFT_MESSAGES, draft.id)
