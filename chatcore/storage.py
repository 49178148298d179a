import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from chatcore.exceptions import StoreError, StoreNotInitializedError, UnknownKindError
from chatcore.models import (
    AppMetadata,
    Base,
    Conversation,
    ConversationUser,
    DraftMessage,
    Message,
    SendMessageRequest,
    User,
)
from chatcore.schemas import (
    AppMetadataSchema,
    ConversationSchema,
    ConversationUserSchema,
    DraftMessageSchema,
    MessageSchema,
    RecordModel,
    SendMessageRequestSchema,
    UserSchema,
    advance_status,
)
from chatcore.utils import now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

LAST_SYNC_TIMESTAMP_KEY = "lastSyncTimestamp"


# =============================================================================
# Record Kinds
# =============================================================================

@dataclass(frozen=True)
class RecordKind:
    """
    Describes one store: its table, its record schema and its keys.

    unique_key names a secondary uniqueness constraint that upsert matches
    on before the primary key. indexes maps index names to columns.
    """
    name: str
    model: type
    schema: type
    primary_key: tuple[str, ...] = ("id",)
    unique_key: Optional[str] = None
    indexes: dict[str, str] = field(default_factory=dict)
    insert_defaults: dict[str, Callable[[], Any]] = field(default_factory=dict)


USERS = "users"
CONVERSATIONS = "conversations"
MESSAGES = "messages"
CONVERSATION_USERS = "conversation_users"
DRAFT_MESSAGES = "draft_messages"
SEND_MESSAGE_REQUESTS = "send_message_requests"
APP_METADATA = "app_metadata"

KINDS: dict[str, RecordKind] = {
    kind.name: kind
    for kind in (
        RecordKind(USERS, User, UserSchema),
        RecordKind(CONVERSATIONS, Conversation, ConversationSchema),
        RecordKind(
            MESSAGES,
            Message,
            MessageSchema,
            indexes={"by-conversation": "conversation_id"},
            insert_defaults={"created_at": now_ms},
        ),
        RecordKind(
            CONVERSATION_USERS,
            ConversationUser,
            ConversationUserSchema,
            primary_key=("conversation_id", "user_id"),
            indexes={"by-conversation": "conversation_id", "by-user": "user_id"},
        ),
        RecordKind(
            DRAFT_MESSAGES,
            DraftMessage,
            DraftMessageSchema,
            unique_key="conversation_id",
            indexes={"by-conversation": "conversation_id"},
        ),
        RecordKind(
            SEND_MESSAGE_REQUESTS,
            SendMessageRequest,
            SendMessageRequestSchema,
            unique_key="message_id",
            indexes={"by-message": "message_id", "by-status": "status"},
        ),
        RecordKind(APP_METADATA, AppMetadata, AppMetadataSchema, primary_key=("key",)),
    )
}


def get_kind(name: str) -> RecordKind:
    try:
        return KINDS[name]
    except KeyError:
        raise UnknownKindError(f"Unknown record kind: {name}") from None


# =============================================================================
# Transaction
# =============================================================================

class Transaction:
    """
    Store operations bound to a single database transaction.

    Every write is flushed immediately, so later reads in the same
    transaction see it. Nothing is visible outside until commit.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, kind: str, key: Any) -> Optional[RecordModel]:
        meta = get_kind(kind)
        row = await self._session.get(meta.model, key)
        return meta.schema.model_validate(row) if row is not None else None

    async def get_all(self, kind: str) -> list:
        meta = get_kind(kind)
        query = select(meta.model).order_by(*self._pk_columns(meta))
        result = await self._session.execute(query)
        return [meta.schema.model_validate(row) for row in result.scalars().all()]

    async def get_all_by_index(self, kind: str, index_name: str, value: Any) -> list:
        """
        Retrieve every record of a kind whose indexed column equals value.

        Args:
            kind: Store name (e.g. "messages")
            index_name: Index defined for that kind (e.g. "by-conversation")
            value: Value to match

        Returns:
            Records ordered by primary key
        """
        meta = get_kind(kind)
        column = meta.indexes.get(index_name)
        if column is None:
            raise UnknownKindError(f"Unknown index {index_name!r} for kind {kind!r}")
        query = (
            select(meta.model)
            .where(getattr(meta.model, column) == value)
            .order_by(*self._pk_columns(meta))
        )
        result = await self._session.execute(query)
        return [meta.schema.model_validate(row) for row in result.scalars().all()]

    async def upsert(self, kind: str, record: Union[dict, BaseModel]) -> RecordModel:
        """
        Insert a record, or merge it into the record it matches.

        Matching uses the kind's secondary unique key first, then the primary
        key. Fields present on the incoming record replace stored ones;
        message status is only ever advanced.

        Returns:
            The stored record after the write, including any generated id
        """
        meta = get_kind(kind)
        data = self._fields(meta, record)

        row = None
        if meta.unique_key and data.get(meta.unique_key) is not None:
            row = await self._first_by(meta, meta.unique_key, data[meta.unique_key])
        if row is None and all(data.get(col) is not None for col in meta.primary_key):
            row = await self._session.get(meta.model, self._key_of(meta, data))

        if row is None:
            for column, default in meta.insert_defaults.items():
                if data.get(column) is None:
                    data[column] = default()
            values = {k: v for k, v in data.items() if not (k in meta.primary_key and v is None)}
            row = meta.model(**values)
            self._session.add(row)
            logger.debug(f"Inserting {kind} record")
        else:
            self._merge(meta, row, data)
            logger.debug(f"Merging into {kind} record {self._key_of(meta, data)}")

        await self._session.flush()
        return meta.schema.model_validate(row)

    async def update(self, kind: str, key: Any, changes: dict) -> Optional[RecordModel]:
        """Apply changes to an existing record; returns None when it does not exist."""
        meta = get_kind(kind)
        row = await self._session.get(meta.model, key)
        if row is None:
            return None
        self._merge(meta, row, changes)
        await self._session.flush()
        return meta.schema.model_validate(row)

    async def delete(self, kind: str, key: Any) -> bool:
        meta = get_kind(kind)
        row = await self._session.get(meta.model, key)
        if row is None:
            return False
        await self._session.delete(row)
        await self._session.flush()
        return True

    # -------------------------------------------------------------------------
    # Convenience operations used by the core
    # -------------------------------------------------------------------------

    async def set_message_status(self, message_id: int, status: str) -> Optional[MessageSchema]:
        return await self.update(MESSAGES, message_id, {"status": status})

    async def get_send_request_by_message(self, message_id: int) -> Optional[SendMessageRequestSchema]:
        requests = await self.get_all_by_index(SEND_MESSAGE_REQUESTS, "by-message", message_id)
        return requests[0] if requests else None

    async def delete_send_request_by_message(self, message_id: int) -> bool:
        request = await self.get_send_request_by_message(message_id)
        if request is None:
            return False
        return await self.delete(SEND_MESSAGE_REQUESTS, request.id)

    async def get_metadata(self, key: str, default: Any = None) -> Any:
        record = await self.get(APP_METADATA, key)
        return record.value if record is not None else default

    async def set_metadata(self, key: str, value: Any) -> None:
        await self.upsert(APP_METADATA, {"key": key, "value": value})

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _pk_columns(meta: RecordKind) -> list:
        return [getattr(meta.model, col) for col in meta.primary_key]

    @staticmethod
    def _key_of(meta: RecordKind, data: dict) -> Any:
        if len(meta.primary_key) == 1:
            return data.get(meta.primary_key[0])
        return tuple(data.get(col) for col in meta.primary_key)

    @staticmethod
    def _fields(meta: RecordKind, record: Union[dict, BaseModel]) -> dict:
        if isinstance(record, BaseModel) and not isinstance(record, meta.schema):
            record = record.model_dump(exclude_unset=True)
        validated = meta.schema.model_validate(record)
        return validated.model_dump(exclude_unset=True)

    @staticmethod
    def _merge(meta: RecordKind, row: Any, data: dict) -> None:
        for column, value in data.items():
            if column in meta.primary_key:
                continue
            if meta.name == MESSAGES and column == "status":
                value = advance_status(row.status, value)
            setattr(row, column, value)

    async def _first_by(self, meta: RecordKind, column: str, value: Any) -> Any:
        query = select(meta.model).where(getattr(meta.model, column) == value).limit(1)
        result = await self._session.execute(query)
        return result.scalars().first()


# =============================================================================
# Local Store
# =============================================================================

class LocalStore:
    """
    Transactional store for users, conversations, messages and delivery state.

    Transactions are serialized; every standalone operation is its own
    single-operation transaction. Inside run_transaction, use the Transaction
    handed to the callback rather than the store itself.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self._engine = None
        self._sessionmaker: Optional[async_sessionmaker] = None
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._sessionmaker is not None

    async def init(self) -> None:
        """
        Initialize the store by creating all tables.
        Must complete before any other operation.
        """
        logger.debug(f"Initializing local store with URL: {self.database_url}")
        engine_kwargs: dict[str, Any] = {"echo": self.echo}
        if ":memory:" in self.database_url:
            # One shared connection, otherwise each connection gets its own empty database
            engine_kwargs["poolclass"] = StaticPool
        try:
            self._engine = create_async_engine(self.database_url, **engine_kwargs)
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize local store: {e}")
            raise StoreError(f"Failed to initialize local store: {e}") from e

        self._sessionmaker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
        logger.info("Local store initialized successfully")

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.info("Local store closed")

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """
        Run fn atomically against every record kind.

        Either all of fn's writes commit or none do. An exception raised by
        fn rolls the transaction back and propagates to the caller.
        """
        if self._sessionmaker is None:
            raise StoreNotInitializedError()

        async with self._lock:
            async with self._sessionmaker() as session:
                try:
                    async with session.begin():
                        return await fn(Transaction(session))
                except SQLAlchemyError as e:
                    logger.error(f"Store transaction failed: {e}")
                    raise StoreError(f"Store transaction failed: {e}") from e

    # -------------------------------------------------------------------------
    # Single-operation transactions
    # -------------------------------------------------------------------------

    async def get(self, kind: str, key: Any) -> Optional[RecordModel]:
        return await self.run_transaction(lambda tx: tx.get(kind, key))

    async def get_all(self, kind: str) -> list:
        return await self.run_transaction(lambda tx: tx.get_all(kind))

    async def get_all_by_index(self, kind: str, index_name: str, value: Any) -> list:
        return await self.run_transaction(lambda tx: tx.get_all_by_index(kind, index_name, value))

    async def upsert(self, kind: str, record: Union[dict, BaseModel]) -> RecordModel:
        return await self.run_transaction(lambda tx: tx.upsert(kind, record))

    async def update(self, kind: str, key: Any, changes: dict) -> Optional[RecordModel]:
        return await self.run_transaction(lambda tx: tx.update(kind, key, changes))

    async def delete(self, kind: str, key: Any) -> bool:
        return await self.run_transaction(lambda tx: tx.delete(kind, key))

    async def set_message_status(self, message_id: int, status: str) -> Optional[MessageSchema]:
        return await self.run_transaction(lambda tx: tx.set_message_status(message_id, status))

    async def get_send_request_by_message(self, message_id: int) -> Optional[SendMessageRequestSchema]:
        return await self.run_transaction(lambda tx: tx.get_send_request_by_message(message_id))

    async def get_metadata(self, key: str, default: Any = None) -> Any:
        return await self.run_transaction(lambda tx: tx.get_metadata(key, default))

    async def set_metadata(self, key: str, value: Any) -> None:
        await self.run_transaction(lambda tx: tx.set_metadata(key, value))
