"""Outbox relay: deliver pending notifications and mark them processed.

Design invariants
-----------------
1.  Pending rows are read in append order, ``batch_size`` per storage
    session.  Every row published in a batch is marked processed in the
    same session, so the marks commit together or not at all.
2.  Delivery is **at-least-once**.  If a batch's session fails after its
    rows were published, the rows stay pending and are published again
    on the next pass.
3.  A row whose type is no longer registered, or whose ``publish()``
    raised, stays pending and is retried next pass.  It never blocks the
    rows after it within a pass.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from aggregate_store.core.clock import IClock, WallClock
from aggregate_store.core.errors import SerializationError, StoreUnavailable
from aggregate_store.domain.events import NotificationEvent
from aggregate_store.infrastructure.criteria import Cursor, EnvelopeCriteria
from aggregate_store.infrastructure.envelope import EventEnvelope
from aggregate_store.infrastructure.event_bus import IEventBus
from aggregate_store.infrastructure.serializer import ISerializer
from aggregate_store.storage.base import IStorage

logger = logging.getLogger(__name__)


@dataclass
class RelayResult:
    """Counts for one :meth:`NotificationRelay.relay_pending` pass."""

    published: int = 0
    skipped: int = 0
    failed: int = 0
    batches: int = 0

    @property
    def left_pending(self) -> int:
        return self.skipped + self.failed


class NotificationRelay:
    """Publishes pending outbox rows to an :class:`IEventBus`.

    Parameters
    ----------
    storage
        Backend holding the notification log.
    serializer
        Codec used to decode the stored notifications.
    bus
        Destination; ``publish()`` is awaited for each row.
    batch_size
        Pending rows handled per storage session.
    interval
        Seconds between passes when running in the background.
    """

    def __init__(
        self,
        storage: IStorage,
        serializer: ISerializer,
        bus: IEventBus,
        *,
        batch_size: int = 50,
        interval: float = 60.0,
        clock: IClock | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._storage = storage
        self._serializer = serializer
        self._bus = bus
        self._batch_size = batch_size
        self._interval = interval
        self._clock = clock or WallClock()
        self._criteria = EnvelopeCriteria().pending()
        self._task: asyncio.Task[None] | None = None

    # -- One pass ----------------------------------------------------------

    async def relay_pending(self) -> RelayResult:
        """Publish every row that is pending when the pass reaches it.

        Raises:
            StoreUnavailable: Transient backend failure.  Batches committed
                before the failure stay marked.
        """
        result = RelayResult()
        cursor: Cursor | None = None
        while True:
            async with self._storage.session() as session:
                log = session.notification_events
                page = await log.fetch_page(
                    self._criteria, cursor=cursor, limit=self._batch_size,
                )
                delivered = [
                    envelope.position
                    for envelope in page
                    if await self._deliver(envelope, result)
                ]
                if delivered:
                    await log.mark_processed(delivered, self._clock.now())
            if page:
                result.batches += 1
            if len(page) < self._batch_size:
                break
            cursor = self._criteria.sort_key(page[-1])

        if result.published or result.left_pending:
            logger.info(
                "Relayed %d notification(s); %d left pending",
                result.published, result.left_pending,
            )
        return result

    async def _deliver(self, envelope: EventEnvelope, result: RelayResult) -> bool:
        try:
            notification = self._serializer.deserialize(
                envelope.payload, envelope.event_type_name,
            )
        except SerializationError as exc:
            result.skipped += 1
            logger.warning(
                "Leaving notification %s (%s) pending: %s",
                envelope.position, envelope.event_type_name, exc,
            )
            return False
        if not isinstance(notification, NotificationEvent):
            result.skipped += 1
            logger.warning(
                "Leaving notification %s pending: %s is not a notification type",
                envelope.position, envelope.event_type_name,
            )
            return False

        try:
            await self._bus.publish(notification)
        except Exception:
            result.failed += 1
            logger.exception(
                "Publishing notification %s (%s) failed",
                envelope.position, envelope.event_type_name,
            )
            return False
        result.published += 1
        return True

    # -- Background loop ---------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="outbox-relay")

    async def stop(self) -> None:
        """Cancel the loop; a batch in flight rolls back and stays pending."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.relay_pending()
            except StoreUnavailable as exc:
                logger.warning("Outbox relay pass failed, retrying later: %s", exc)
            await asyncio.sleep(self._interval)
