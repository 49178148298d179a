"""
Wire transport for the delivery engine.

A Connection is a reconnecting, event-based duplex socket: handlers are
registered per event name, and emit() puts an event on the wire.
WebSocketConnection implements it with JSON frames over websockets:

    {"event": "message_sent", "data": {"messageId": 7}}

TransportClient translates inbound wire events into store mutations and
bus notifications, and forwards the scheduler's sendMessage intents to the
wire.
"""

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

import websockets
from pydantic import ValidationError

from chatcore import events
from chatcore.exceptions import TransportError
from chatcore.logging_utils import message_context
from chatcore.metrics import record_ack, record_incoming_message, record_send_failure
from chatcore.schemas import MessageEvent, MessageSchema, MessageStatus, RequestStatus
from chatcore.storage import MESSAGES, SEND_MESSAGE_REQUESTS, LocalStore, Transaction

if TYPE_CHECKING:
    from chatcore.sync import SyncCoordinator

logger = logging.getLogger(__name__)

WireHandler = Callable[[Any], Any]

# Inbound wire events
CONNECT = "connect"
DISCONNECT = "disconnect"
MESSAGE_SENT = "message_sent"
MESSAGE_DELIVERED = "message_delivered"
MESSAGE_FAILED = "message_failed"
INCOMING_MESSAGE = "incoming_message"
SYNC = "sync"
SYNC_RESPONSE = "sync_response"

# Outbound wire intents
SEND_MESSAGE = "sendMessage"
REQUEST_SYNC = "request_sync"


class Connection(Protocol):
    """Reconnecting duplex connection carrying named events."""

    @property
    def connected(self) -> bool: ...

    def on(self, event: str, handler: WireHandler) -> None: ...

    async def emit(self, event: str, data: Any) -> None: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...


class WebSocketConnection:
    """
    Connection over a websocket with automatic reconnection.

    connect() returns immediately; a background task keeps the socket open,
    reconnecting every reconnect_interval seconds after a drop, and raises
    the "connect" event each time a connection is established. Inbound
    frames are dispatched in arrival order, one at a time.
    """

    def __init__(self, url: str, reconnect_interval: float = 5.0, heartbeat_interval: float = 30.0):
        self.url = url
        self.reconnect_interval = reconnect_interval
        self.heartbeat_interval = heartbeat_interval
        self._handlers: dict[str, list[WireHandler]] = defaultdict(list)
        self._websocket: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    def on(self, event: str, handler: WireHandler) -> None:
        self._handlers[event].append(handler)
        logger.debug(f"Registered handler for wire event: {event}")

    async def connect(self) -> None:
        if not self.url:
            logger.warning("No server URL configured; running offline")
            return
        if self._task is not None and not self._task.done():
            logger.debug("WebSocket connection task already running")
            return
        self._closed = False
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        self._closed = True
        if self._websocket is not None:
            try:
                await self._websocket.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"Error closing WebSocket: {e}")
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._websocket = None
        logger.info("WebSocket connection closed")

    async def emit(self, event: str, data: Any) -> None:
        websocket = self._websocket
        if websocket is None:
            raise TransportError(f"Cannot emit {event}: not connected")
        frame = json.dumps({"event": event, "data": data})
        try:
            await websocket.send(frame)
        except websockets.exceptions.WebSocketException as e:
            raise TransportError(f"Failed to emit {event}: {e}") from e
        logger.debug(f"Emitted {event} ({len(frame)} bytes)")

    async def _run(self) -> None:
        while not self._closed:
            try:
                logger.info(f"Connecting to {self.url}")
                async with websockets.connect(self.url, ping_interval=self.heartbeat_interval) as websocket:
                    self._websocket = websocket
                    logger.info(f"WebSocket connected: {self.url}")
                    await self._dispatch(CONNECT, None)
                    async for raw in websocket:
                        await self._handle_frame(raw)
                logger.warning("WebSocket connection closed by server")
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"WebSocket connection failed: {e}")
            finally:
                was_connected = self._websocket is not None
                self._websocket = None
                if was_connected:
                    await self._dispatch(DISCONNECT, None)

            if not self._closed:
                await asyncio.sleep(self.reconnect_interval)

    async def _handle_frame(self, raw: Any) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Dropping undecodable frame: {e}")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            logger.error("Dropping frame without an event name")
            return
        await self._dispatch(frame["event"], frame.get("data"))

    async def _dispatch(self, event: str, data: Any) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            logger.debug(f"No handler for wire event: {event}")
            return
        for handler in list(handlers):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler error for wire event {event}: {e}", exc_info=True)


class TransportClient:
    """Bridges the wire connection with the local store and the event bus."""

    def __init__(self, connection: Connection, store: LocalStore, bus: events.EventBus,
                 coordinator: "SyncCoordinator"):
        self.connection = connection
        self.store = store
        self.bus = bus
        self.coordinator = coordinator
        self._registered = False

    def register(self) -> None:
        """Attach wire-event handlers and subscribe to outbound intents."""
        if self._registered:
            return
        self._registered = True
        self.connection.on(CONNECT, self.handle_connect)
        self.connection.on(MESSAGE_SENT, self.handle_message_sent)
        self.connection.on(MESSAGE_DELIVERED, self.handle_message_delivered)
        self.connection.on(MESSAGE_FAILED, self.handle_message_failed)
        self.connection.on(INCOMING_MESSAGE, self.handle_incoming_message)
        self.connection.on(SYNC, self.handle_sync)
        self.connection.on(SYNC_RESPONSE, self.handle_sync)
        self.bus.subscribe(events.SEND_MESSAGE, self.handle_send_message)

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def handle_connect(self, data: Any = None) -> None:
        logger.info("Connected to server; requesting sync")
        await self.coordinator.request_sync()

    async def handle_message_sent(self, data: Any) -> None:
        message_id = self._message_id(MESSAGE_SENT, data)
        if message_id is None:
            return

        async def acknowledge(tx: Transaction) -> None:
            await tx.set_message_status(message_id, MessageStatus.SENT.value)
            await tx.delete_send_request_by_message(message_id)

        with message_context(message_id):
            await self.store.run_transaction(acknowledge)
            logger.info("Message acknowledged as sent")
        record_ack(MessageStatus.SENT.value)
        self.bus.publish(events.MESSAGE_SENT, message_id)

    async def handle_message_delivered(self, data: Any) -> None:
        message_id = self._message_id(MESSAGE_DELIVERED, data)
        if message_id is None:
            return
        with message_context(message_id):
            await self.store.set_message_status(message_id, MessageStatus.DELIVERED.value)
            logger.info("Message delivered")
        record_ack(MessageStatus.DELIVERED.value)
        self.bus.publish(events.MESSAGE_DELIVERED, message_id)

    async def handle_message_failed(self, data: Any) -> None:
        message_id = self._message_id(MESSAGE_FAILED, data)
        if message_id is None:
            return
        await self.mark_failed(message_id, source="wire")

    async def handle_incoming_message(self, data: Any) -> None:
        try:
            message = MessageSchema.model_validate(data)
        except ValidationError as e:
            logger.error(f"Dropping invalid incoming message: {e}")
            return
        stored = await self.store.upsert(MESSAGES, message)
        with message_context(stored.id):
            logger.info("Incoming message stored")
        record_incoming_message()
        self.bus.publish(events.INCOMING_MESSAGE, stored.id)

    async def handle_sync(self, data: Any) -> None:
        await self.coordinator.apply_snapshot(data)

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def handle_send_message(self, message: MessageSchema) -> None:
        """Put a message on the wire; a local failure is recorded as a send failure."""
        with message_context(message.id):
            try:
                await self.connection.emit(SEND_MESSAGE, message.model_dump(mode="json"))
            except TransportError as e:
                logger.warning(f"Could not dispatch message: {e}")
                await self.mark_failed(message.id, source="local")

    async def mark_failed(self, message_id: int, source: str) -> None:
        """
        Record a failed delivery attempt and announce it.

        The request (if one still exists) moves to fail with fail_count + 1
        inside one transaction; messageFailed is published either way.
        """

        async def fail_request(tx: Transaction):
            request = await tx.get_send_request_by_message(message_id)
            if request is None:
                return None
            return await tx.update(SEND_MESSAGE_REQUESTS, request.id, {
                "status": RequestStatus.FAIL.value,
                "fail_count": request.fail_count + 1,
            })

        with message_context(message_id):
            request = await self.store.run_transaction(fail_request)
            if request is not None:
                logger.warning(f"Send failed ({source}); fail_count={request.fail_count}")
            else:
                logger.info(f"Send failure ({source}) for a message with no pending request")
        record_send_failure(source)
        self.bus.publish(events.MESSAGE_FAILED, message_id)

    @staticmethod
    def _message_id(event: str, data: Any) -> Optional[int]:
        try:
            return MessageEvent.model_validate(data).message_id
        except ValidationError as e:
            logger.error(f"Dropping malformed {event} event: {e}")
            return None
