"""Post-commit event bus abstraction and in-memory implementation.

Design goals
------------
1.  **Type-routed dispatching**: subscribers register for a concrete
    ``DomainEvent`` or ``NotificationEvent`` subclass.  When an event is
    published the bus routes it to every handler whose registered type
    matches ``type(event)``.
2.  **Never blocks a commit**: the commit path calls ``publish_nowait()``,
    which only enqueues onto a bounded ``asyncio.Queue``.  A separate
    drain task delivers.  When the queue is full the event is dropped and
    counted; the commit has already succeeded.
3.  **Handler isolation**: a failing handler is logged, counted and
    dead-lettered; other handlers still receive the event.

This module provides:

*  ``IEventBus``  the protocol.
*  ``InMemoryEventBus``  in-process implementation.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from aggregate_store.domain.events import DomainEvent, NotificationEvent

logger = logging.getLogger(__name__)

# Committed domain events, and outbox notifications forwarded by the relay.
BusEvent = DomainEvent | NotificationEvent

# Type alias for async event handlers.
EventHandler = Callable[[BusEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class IEventBus(Protocol):
    """Publish/subscribe bus for committed domain events and notifications."""

    async def publish(self, event: BusEvent) -> None:
        """Deliver *event* to all matching subscribers before returning."""
        ...

    def publish_nowait(self, event: BusEvent) -> bool:
        """Enqueue *event* for background delivery.

        Returns ``False`` if the event was dropped because the queue is full.
        """
        ...

    def subscribe(
        self,
        event_type: type[BusEvent],
        handler: EventHandler,
    ) -> None:
        """Register *handler* for events of exactly *event_type*."""
        ...

    async def start(self) -> None: ...
    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryEventBus:
    """In-process event bus with a bounded delivery queue.

    Parameters
    ----------
    queue_size
        Capacity of the background delivery queue.  Events published with
        ``publish_nowait()`` beyond it are dropped.
    history_size
        Number of delivered events kept for ``get_history()``.
    """

    def __init__(self, *, queue_size: int = 1024, history_size: int = 1000) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self._handlers: dict[
            type[BusEvent], list[EventHandler]
        ] = defaultdict(list)
        self._queue: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=queue_size)
        self._history: deque[BusEvent] = deque(maxlen=history_size)
        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[tuple[BusEvent, str]] = []
        self._messages_processed: int = 0
        self._dropped: int = 0
        self._drain_task: asyncio.Task[None] | None = None

    # -- Lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._drain_task = asyncio.create_task(self._drain(), name="event-bus-drain")

    async def stop(self) -> None:
        """Deliver what is queued, then stop the drain task."""
        if self._drain_task is None:
            return
        await self._queue.join()
        self._drain_task.cancel()
        try:
            await self._drain_task
        except asyncio.CancelledError:
            pass
        self._drain_task = None

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    # -- Core API ----------------------------------------------------------

    async def publish(self, event: BusEvent) -> None:
        await self._dispatch(event)

    def publish_nowait(self, event: BusEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "Event bus queue full; dropped %s for %s v%d",
                type(event).__name__,
                event.aggregate_id,
                event.aggregate_version,
            )
            return False
        return True

    def subscribe(
        self,
        event_type: type[BusEvent],
        handler: EventHandler,
    ) -> None:
        """Register *handler* for *event_type*."""
        self._handlers[event_type].append(handler)

    async def _dispatch(self, event: BusEvent) -> None:
        event_cls = type(event)
        self._history.append(event)
        for handler in self._handlers.get(event_cls, []):
            try:
                await handler(event)
                self._messages_processed += 1
            except Exception as exc:
                key = event_cls.__name__
                self._error_counts[key] += 1
                self._dead_letters.append((event, str(exc)))
                logger.exception(
                    "Handler error on %s: %s", key, exc,
                )

    # -- Observability -----------------------------------------------------

    def get_history(
        self,
        event_type: type[BusEvent] | None = None,
    ) -> list[BusEvent]:
        """Return delivered events, optionally filtered."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if type(e) is event_type]

    def get_error_counts(self) -> dict[str, int]:
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[tuple[BusEvent, str]]:
        return list(self._dead_letters)

    def clear_dead_letters(self) -> list[tuple[BusEvent, str]]:
        """Drain and return dead letters."""
        drained = self._dead_letters[:]
        self._dead_letters.clear()
        return drained

    @property
    def messages_processed(self) -> int:
        return self._messages_processed

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def pending(self) -> int:
        return self._queue.qsize()
