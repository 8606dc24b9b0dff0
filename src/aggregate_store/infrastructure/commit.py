"""Commit coordinator: persist an aggregate's pending changes as one unit.

A commit runs inside a single storage session:

1.  The uncommitted domain events are wrapped as envelopes and appended to
    the domain log, guarded by the version the aggregate was loaded at.
    A commit with only notifications takes the same guard without writing
    to the domain log.
2.  The uncommitted notifications are appended to the notification log.
3.  Only after the session has committed are both queues cleared and the
    domain events handed to the event bus.

If anything fails, cancellation included, the session rolls back and the
aggregate keeps its queues, so retrying the same commit is safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from aggregate_store.core.clock import IClock, WallClock
from aggregate_store.domain.aggregate import Aggregate
from aggregate_store.domain.events import DomainEvent, NotificationEvent
from aggregate_store.infrastructure.envelope import EventEnvelope
from aggregate_store.infrastructure.event_bus import IEventBus
from aggregate_store.infrastructure.serializer import ISerializer
from aggregate_store.storage.base import IStorage

logger = logging.getLogger(__name__)


class CommitState(str, Enum):
    PENDING = "pending"
    APPENDING = "appending"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class CommitResult:
    """Outcome of one :meth:`CommitCoordinator.commit` call."""

    aggregate_id: str
    state: CommitState = CommitState.PENDING
    expected_version: int = 0
    committed_version: int = 0
    domain_envelopes: list[EventEnvelope] = field(default_factory=list)
    notification_envelopes: list[EventEnvelope] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        return len(self.domain_envelopes)

    @property
    def notification_count(self) -> int:
        return len(self.notification_envelopes)


class CommitCoordinator:
    """Appends domain events and notifications of one aggregate atomically."""

    def __init__(
        self,
        storage: IStorage,
        serializer: ISerializer,
        *,
        bus: IEventBus | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._storage = storage
        self._serializer = serializer
        self._bus = bus
        self._clock = clock or WallClock()

    def _wrap(
        self,
        aggregate: Aggregate,
        event: DomainEvent | NotificationEvent,
    ) -> EventEnvelope:
        return EventEnvelope(
            aggregate_id=aggregate.aggregate_id,
            aggregate_type=aggregate.aggregate_type,
            aggregate_version=event.aggregate_version,
            event_type_name=self._serializer.type_name_of(event),
            payload=self._serializer.serialize(event),
            created_on=self._clock.now(),
        )

    async def commit(self, aggregate: Aggregate) -> CommitResult:
        """Persist the pending events and notifications of *aggregate*.

        Returns:
            A :class:`CommitResult` in state ``COMMITTED``.  With nothing
            pending the call does no I/O and reports zero counts.

        Raises:
            ConcurrencyConflict: The stream moved past the version the
                aggregate was loaded at.  Reload and retry.
            SerializationError: An event type is not registered.
            StoreUnavailable: Transient backend failure.
        """
        events = aggregate.get_uncommitted_events()
        notifications = aggregate.get_uncommitted_notifications()
        result = CommitResult(
            aggregate_id=aggregate.aggregate_id,
            expected_version=aggregate.persisted_version,
            committed_version=aggregate.version,
        )
        if not events and not notifications:
            result.state = CommitState.COMMITTED
            return result

        domain = [self._wrap(aggregate, e) for e in events]
        outbox = [self._wrap(aggregate, n) for n in notifications]

        result.state = CommitState.APPENDING
        try:
            async with self._storage.session() as session:
                if domain:
                    result.domain_envelopes = await session.domain_events.append(
                        domain, expected_version=result.expected_version,
                    )
                else:
                    await session.domain_events.check_version(
                        aggregate.aggregate_id, result.expected_version,
                    )
                if outbox:
                    result.notification_envelopes = await session.notification_events.append(
                        outbox,
                    )
        except BaseException:
            result.state = CommitState.FAILED
            logger.info(
                "Commit of %s at v%d failed; pending changes kept",
                aggregate.aggregate_id, result.expected_version,
            )
            raise

        aggregate.mark_events_committed()
        aggregate.mark_notifications_committed()
        result.state = CommitState.COMMITTED
        logger.info(
            "Committed %s v%d -> v%d (%d event(s), %d notification(s))",
            aggregate.aggregate_id,
            result.expected_version,
            result.committed_version,
            result.event_count,
            result.notification_count,
        )

        if self._bus is not None:
            for event in events:
                self._bus.publish_nowait(event)
        return result
