import asyncio
import logging
import time
from typing import Any, Optional

from pydantic import ValidationError

from chatcore import events
from chatcore.exceptions import StoreNotInitializedError, SyncError, TransportError
from chatcore.metrics import record_sync
from chatcore.schemas import SyncPayload, SyncRequest
from chatcore.storage import (
    CONVERSATION_USERS,
    CONVERSATIONS,
    LAST_SYNC_TIMESTAMP_KEY,
    MESSAGES,
    USERS,
    LocalStore,
    Transaction,
)
from chatcore.transport import REQUEST_SYNC, Connection
from chatcore.utils import now_ms

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """
    Reconciles local state with server snapshots.

    A snapshot is merged in a single store transaction: either every record
    in it lands, together with the new lastSyncTimestamp, or nothing does.
    """

    def __init__(self, store: LocalStore, bus: events.EventBus, connection: Connection,
                 interval_seconds: float = 0.0):
        self.store = store
        self.bus = bus
        self.connection = connection
        self.interval_seconds = interval_seconds
        self._periodic_task: Optional[asyncio.Task] = None

    async def request_sync(self) -> Optional[dict]:
        """
        Ask the server for everything newer than the last merged snapshot.

        Returns:
            The request_sync payload emitted, or None if it could not be sent
        """
        last_sync = await self.store.get_metadata(LAST_SYNC_TIMESTAMP_KEY, 0)
        payload = SyncRequest(last_sync_timestamp=last_sync or 0).model_dump(by_alias=True)
        try:
            await self.connection.emit(REQUEST_SYNC, payload)
        except TransportError as e:
            logger.warning(f"Could not request sync: {e}")
            return None
        logger.info(f"Requested sync since {payload['lastSyncTimestamp']}")
        return payload

    async def apply_snapshot(self, data: Any) -> bool:
        """
        Merge a sync / sync_response payload into the store.

        Publishes syncCompleted with the new lastSyncTimestamp on success, or
        syncFailed with a SyncError on any failure (nothing is persisted).

        Returns:
            True if the snapshot was merged
        """
        started = time.monotonic()
        try:
            payload = SyncPayload.model_validate(data if data is not None else {})
            timestamp = await self.store.run_transaction(lambda tx: self._merge(tx, payload))
        except StoreNotInitializedError:
            raise
        except Exception as e:
            if isinstance(e, SyncError):
                error = e
            else:
                error = SyncError(f"Sync merge failed: {e}")
                error.__cause__ = e
            logger.error(f"Sync merge aborted: {error}")
            record_sync("failed", time.monotonic() - started)
            self.bus.publish(events.SYNC_FAILED, error)
            return False

        logger.info(
            f"Sync merged {len(payload.messages)} messages, {len(payload.conversations)} conversations, "
            f"{len(payload.users)} users; lastSyncTimestamp={timestamp}"
        )
        record_sync("completed", time.monotonic() - started)
        self.bus.publish(events.SYNC_COMPLETED, timestamp)
        return True

    async def _merge(self, tx: Transaction, payload: SyncPayload) -> int:
        batches = (
            (USERS, payload.users),
            (CONVERSATIONS, payload.conversations),
            (CONVERSATION_USERS, payload.conversation_users),
            (MESSAGES, payload.messages),
        )
        for kind, records in batches:
            for record in records:
                try:
                    await tx.upsert(kind, record)
                except ValidationError as e:
                    raise SyncError(f"Invalid {kind} record: {e}", record_kind=kind,
                                    record_id=record.get("id")) from e

        # Never move the clock backwards, even if the local clock does
        previous = await tx.get_metadata(LAST_SYNC_TIMESTAMP_KEY, 0) or 0
        timestamp = max(previous, now_ms())
        await tx.set_metadata(LAST_SYNC_TIMESTAMP_KEY, timestamp)
        return timestamp

    # -------------------------------------------------------------------------
    # Periodic reconciliation
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self.interval_seconds <= 0 or self._periodic_task is not None:
            return
        self._periodic_task = asyncio.create_task(self._run_periodic())
        logger.info(f"Periodic sync every {self.interval_seconds}s")

    async def stop(self) -> None:
        task = self._periodic_task
        self._periodic_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            if not self.connection.connected:
                continue
            try:
                await self.request_sync()
            except Exception as e:
                logger.error(f"Periodic sync request failed: {e}", exc_info=True)
