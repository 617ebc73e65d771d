"""Exchange lifecycle event bus.

The controller publishes one event when an exchange starts and one when
it completes, aborts or fails. Subscribers run on a background worker so
publishing never waits on them; a failing subscriber is logged and the
rest still run. Subscribing to ANY_EVENT receives every event, which is
how main.py writes the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Subscriber = Callable[["Event"], Awaitable[None]]

EXCHANGE_STARTED = "exchange_started"
EXCHANGE_COMPLETED = "exchange_completed"
EXCHANGE_ABORTED = "exchange_aborted"
EXCHANGE_FAILED = "exchange_failed"
ANY_EVENT = "*"


@dataclass(frozen=True)
class Event:
    type: str
    conversation_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Bounded queue drained by one worker task.

    Events published before start() wait in the queue; stop() delivers
    whatever is still queued before returning.
    """

    def __init__(self, max_queue: int = 1000, stop_timeout: float = 5.0):
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self._stop_timeout = stop_timeout

    def on(self, event_type: str, subscriber: Subscriber) -> None:
        self._subscribers[event_type].append(subscriber)
        logger.debug("Subscribed %s to '%s'", subscriber.__qualname__, event_type)

    async def emit(self, event: Event) -> None:
        """Queue an event; drops it with a warning when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping %s for %s", event.type, event.conversation_id)

    async def publish(self, event_type: str, conversation_id: str, **data: Any) -> None:
        await self.emit(Event(type=event_type, conversation_id=conversation_id, data=data))

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._work(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        if self._worker is None:
            await self._drain()
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("Event bus stopping with %d undelivered events", self.pending)
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Event bus stopped")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _work(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _drain(self) -> None:
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: Event) -> None:
        subscribers = [*self._subscribers.get(ANY_EVENT, []), *self._subscribers.get(event.type, [])]
        if subscribers:
            await asyncio.gather(*(self._call(s, event) for s in subscribers))

    async def _call(self, subscriber: Subscriber, event: Event) -> None:
        try:
            await subscriber(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Subscriber %s failed on %s", subscriber.__qualname__, event.type)
