"""
In-process publish/subscribe bus used between the scheduler, the transport
and consumers.

Delivery is fire-once to the handlers registered at publish time. Nothing is
buffered for late subscribers and nothing is persisted; durable intent lives
in the send_message_requests store.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]

# Consumer-facing events
MESSAGE_SENT = "messageSent"
MESSAGE_DELIVERED = "messageDelivered"
MESSAGE_FAILED = "messageFailed"
MESSAGE_ABANDONED = "messageAbandoned"
INCOMING_MESSAGE = "incomingMessage"
SYNC_COMPLETED = "syncCompleted"
SYNC_FAILED = "syncFailed"

# Internal: scheduler -> transport
SEND_MESSAGE = "sendMessage"


class EventBus:
    """Synchronous event bus keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        handlers = self._handlers.get(name)
        if not handlers:
            return
        self._handlers[name] = [h for h in handlers if h != handler]

    def clear(self, name: Optional[str] = None) -> None:
        """Drop the handlers for one event, or for every event."""
        if name is None:
            self._handlers.clear()
        else:
            self._handlers.pop(name, None)

    def handler_count(self, name: str) -> int:
        return len(self._handlers.get(name, ()))

    def publish(self, name: str, *payload: Any) -> None:
        """
        Invoke every handler registered for name, in registration order.

        A handler that raises is logged and the remaining handlers still run.
        A handler that returns an awaitable has it scheduled on the running
        loop; its failure is logged when it completes.
        """
        for handler in list(self._handlers.get(name, ())):
            try:
                result = handler(*payload)
            except Exception as exc:
                logger.error(f"EventBus handler failed for event '{name}': {exc}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._schedule(name, result)

    async def drain(self) -> None:
        """Wait until every handler task scheduled so far has finished."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _schedule(self, name: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            # No running loop to host the coroutine
            logger.error(f"EventBus could not schedule handler for event '{name}': {exc}")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_task_done(name, t))

    def _on_task_done(self, name: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"EventBus async handler failed for event '{name}': {exc}", exc_info=exc)
