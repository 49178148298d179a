"""
Outbound message scheduler.

Each outbound message has one SendMessageRequest row that moves through

    pending -> in_flight -> (deleted on message_sent) | fail -> in_flight -> ...

A single worker task drains an in-memory FIFO queue of message ids. The queue
is only a cache: the persisted request rows are re-read before every
decision, and the queue is rebuilt from them on startup.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from chatcore import events
from chatcore.logging_utils import message_context
from chatcore.metrics import record_send_attempt, record_send_failure, set_queue_depth
from chatcore.schemas import MessageSchema, MessageStatus, RequestStatus, SendMessageRequestSchema
from chatcore.storage import MESSAGES, SEND_MESSAGE_REQUESTS, LocalStore, Transaction
from chatcore.utils import backoff_delay, now_ms

logger = logging.getLogger(__name__)

# Outcomes of preparing an attempt
_SEND = "send"
_SKIP = "skip"
_CHANGED = "changed"


@dataclass
class QueuedSend:
    message_id: int
    # Loop time at which the request was marked fail; the backoff origin
    failed_at: Optional[float] = None
    # Failures the store could not record; paces retries while it is unavailable
    store_errors: int = 0


class MessageScheduler:
    """
    Drives outbound messages until the server acknowledges them.

    Args:
        store: Local store holding the request rows
        bus: Event bus; sendMessage is published for the transport
        backoff_base: Seconds in one backoff unit; a request that failed n
            times waits 2^n units
        backoff_max: Ceiling on any single backoff wait, in seconds
        max_attempts: Stop retrying once fail_count reaches this; None retries forever
        blocking_retries: Sleep through backoffs inside the worker (strict FIFO,
            head-of-line blocking) instead of parking each retry on its own timer
    """

    def __init__(self, store: LocalStore, bus: events.EventBus, backoff_base: float = 1.0,
                 backoff_max: float = 300.0, max_attempts: Optional[int] = None,
                 blocking_retries: bool = False):
        self.store = store
        self.bus = bus
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_attempts = max_attempts
        self.blocking_retries = blocking_retries
        self._queue: asyncio.Queue = asyncio.Queue()
        # Items waiting in the queue, parked on a retry timer or being processed
        self._scheduled: dict[int, QueuedSend] = {}
        self._timers: dict[int, asyncio.Task] = {}
        self._worker: Optional[asyncio.Task] = None

    @property
    def scheduled_message_ids(self) -> set[int]:
        return set(self._scheduled)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def init(self) -> None:
        """Rebuild the queue from persisted requests and start the worker."""
        requests = await self.store.run_transaction(self._load_unfinished)
        loop = asyncio.get_running_loop()
        for request in requests:
            failed_at = loop.time() if request.status == RequestStatus.FAIL.value else None
            self._enqueue(QueuedSend(request.message_id, failed_at))
        logger.info(f"Scheduler restored {len(requests)} queued sends")

        self.bus.unsubscribe(events.MESSAGE_FAILED, self._on_message_failed)
        self.bus.subscribe(events.MESSAGE_FAILED, self._on_message_failed)
        self._start_worker()

    async def stop(self) -> None:
        """Cancel the worker and retry timers; queued work stays in the store."""
        self.bus.unsubscribe(events.MESSAGE_FAILED, self._on_message_failed)
        tasks = list(self._timers.values())
        if self._worker is not None:
            tasks.append(self._worker)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        # Rebuilt from the store on the next init()
        self._scheduled.clear()
        self._queue = asyncio.Queue()
        self._worker = None
        logger.info("Scheduler stopped")

    async def add_task(self, message_id: int) -> SendMessageRequestSchema:
        """Create the send request for a stored message and queue it."""
        request = await self.store.run_transaction(lambda tx: self.create_request(tx, message_id))
        self.enqueue(message_id)
        return request

    async def create_request(self, tx: Transaction, message_id: int) -> SendMessageRequestSchema:
        """
        Persist a fresh pending request for message_id.

        A message has at most one request; if one already exists (possibly
        in flight) it is returned unchanged rather than reset.
        """
        existing = await tx.get_send_request_by_message(message_id)
        if existing is not None:
            logger.debug(f"Message {message_id} already has a {existing.status} request")
            return existing
        return await tx.upsert(SEND_MESSAGE_REQUESTS, {
            "message_id": message_id,
            "status": RequestStatus.PENDING.value,
            "last_sent_at": now_ms(),
            "fail_count": 0,
        })

    def enqueue(self, message_id: int) -> None:
        """Queue a message whose request is already persisted."""
        self._enqueue(QueuedSend(message_id))
        self._start_worker()

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _start_worker(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            set_queue_depth(self._queue.qsize())
            try:
                await self._process(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduler failed processing message {item.message_id}: {e}", exc_info=True)
                await self._record_local_failure(item)
            finally:
                self._queue.task_done()

    async def _process(self, item: QueuedSend) -> None:
        with message_context(item.message_id):
            request = await self.store.get_send_request_by_message(item.message_id)
            if request is None:
                logger.debug("Request already acknowledged; dropping from queue")
                self._scheduled.pop(item.message_id, None)
                return

            if request.status == RequestStatus.FAIL.value:
                if self.max_attempts is not None and request.fail_count >= self.max_attempts:
                    await self._abandon(request)
                    return
                loop = asyncio.get_running_loop()
                if item.failed_at is None:
                    item.failed_at = loop.time()
                delay = backoff_delay(request.fail_count, self.backoff_base, self.backoff_max)
                remaining = item.failed_at + delay - loop.time()
                if remaining > 0:
                    if not self.blocking_retries:
                        self._park(item, remaining)
                        return
                    logger.info(f"Waiting {remaining:.2f}s before retry #{request.fail_count}")
                    await asyncio.sleep(remaining)
            elif request.status != RequestStatus.PENDING.value:
                # in_flight: handed to the transport, waiting for the server
                logger.debug(f"Request is {request.status}; not resending")
                self._scheduled.pop(item.message_id, None)
                return

            await self._send(item, request.fail_count)

    async def _send(self, item: QueuedSend, expected_fail_count: int) -> None:
        try:
            outcome, message = await self.store.run_transaction(
                lambda tx: self._mark_in_flight(tx, item.message_id, expected_fail_count)
            )
        except Exception as e:
            logger.error(f"Error preparing message for send: {e}")
            await self._record_local_failure(item)
            return

        if outcome == _CHANGED:
            # Failed again while this attempt was being prepared; back off from now
            logger.info("Request failed again before dispatch; rescheduling")
            item.failed_at = asyncio.get_running_loop().time()
            self._queue.put_nowait(item)
            set_queue_depth(self._queue.qsize())
            return

        self._scheduled.pop(item.message_id, None)
        if outcome != _SEND:
            return
        record_send_attempt()
        logger.info("Handing message to transport")
        self.bus.publish(events.SEND_MESSAGE, message)

    async def _mark_in_flight(self, tx: Transaction, message_id: int,
                              expected_fail_count: int) -> tuple[str, Optional[MessageSchema]]:
        request = await tx.get_send_request_by_message(message_id)
        if request is None or request.status not in (RequestStatus.PENDING.value, RequestStatus.FAIL.value):
            return _SKIP, None
        if request.fail_count != expected_fail_count:
            return _CHANGED, None
        message = await tx.get(MESSAGES, message_id)
        if message is None:
            logger.warning("Message no longer exists; deleting its send request")
            await tx.delete(SEND_MESSAGE_REQUESTS, request.id)
            return _SKIP, None
        await tx.update(SEND_MESSAGE_REQUESTS, request.id, {
            "status": RequestStatus.IN_FLIGHT.value,
            "last_sent_at": now_ms(),
        })
        return _SEND, message

    async def _record_local_failure(self, item: QueuedSend) -> None:
        """Mark the request failed (fail_count + 1) and retry it after its backoff."""

        async def fail_request(tx: Transaction) -> Optional[SendMessageRequestSchema]:
            request = await tx.get_send_request_by_message(item.message_id)
            if request is None:
                return None
            return await tx.update(SEND_MESSAGE_REQUESTS, request.id, {
                "status": RequestStatus.FAIL.value,
                "fail_count": request.fail_count + 1,
            })

        record_send_failure("local")
        item.failed_at = asyncio.get_running_loop().time()
        try:
            request = await self.store.run_transaction(fail_request)
        except Exception as e:
            # The row still reads as before, so pace the retry here instead
            item.store_errors += 1
            logger.error(f"Could not record send failure: {e}")
            self._park(item, backoff_delay(item.store_errors, self.backoff_base, self.backoff_max))
            return

        if request is None:
            logger.debug("Request already acknowledged; dropping from queue")
            self._scheduled.pop(item.message_id, None)
            return
        item.store_errors = 0
        self._queue.put_nowait(item)
        set_queue_depth(self._queue.qsize())

    async def _abandon(self, request: SendMessageRequestSchema) -> None:
        logger.warning(f"Giving up after {request.fail_count} failed attempts")
        await self.store.set_message_status(request.message_id, MessageStatus.FAILED.value)
        self._scheduled.pop(request.message_id, None)
        self.bus.publish(events.MESSAGE_ABANDONED, request.message_id)

    # -------------------------------------------------------------------------
    # Queue bookkeeping
    # -------------------------------------------------------------------------

    def _enqueue(self, item: QueuedSend) -> None:
        queued = self._scheduled.get(item.message_id)
        if queued is not None:
            if item.failed_at is not None:
                # Failed again while waiting; its backoff restarts from this failure
                queued.failed_at = item.failed_at
            logger.debug(f"Message {item.message_id} already scheduled")
            return
        self._scheduled[item.message_id] = item
        self._queue.put_nowait(item)
        set_queue_depth(self._queue.qsize())

    def _park(self, item: QueuedSend, delay: float) -> None:
        logger.info(f"Retry scheduled in {delay:.2f}s")
        self._timers[item.message_id] = asyncio.create_task(self._requeue_after(item, delay))

    async def _requeue_after(self, item: QueuedSend, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            self._queue.put_nowait(item)
            set_queue_depth(self._queue.qsize())
        finally:
            self._timers.pop(item.message_id, None)

    def _on_message_failed(self, message_id: int) -> None:
        """Requeue a request the server (or the transport) reported as failed."""
        loop = asyncio.get_running_loop()
        self._enqueue(QueuedSend(message_id, failed_at=loop.time()))

    @staticmethod
    async def _load_unfinished(tx: Transaction) -> list[SendMessageRequestSchema]:
        requests = await tx.get_all(SEND_MESSAGE_REQUESTS)
        unfinished = []
        for request in requests:
            if request.status == RequestStatus.IN_FLIGHT.value:
                # Orphaned by a crash mid-send; retry it like any failed send
                request = await tx.update(SEND_MESSAGE_REQUESTS, request.id, {"status": RequestStatus.FAIL.value})
                logger.info(f"Reclassified in-flight request for message {request.message_id} as failed")
            if request.status in (RequestStatus.PENDING.value, RequestStatus.FAIL.value):
                unfinished.append(request)
        return unfinished
