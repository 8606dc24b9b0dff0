"""Application-facing repository for one aggregate type.

Wires the rehydrator, commit coordinator and snapshot manager together and
applies the snapshot cadence policy after each successful save.
"""

from __future__ import annotations

import logging
from typing import Generic, TypeVar

from aggregate_store.core.errors import (
    AggregateNotFound,
    AggregateStoreError,
    SerializationError,
)
from aggregate_store.domain.aggregate import Aggregate
from aggregate_store.domain.events import NotificationEvent
from aggregate_store.infrastructure.commit import CommitCoordinator, CommitResult
from aggregate_store.infrastructure.criteria import EnvelopeCriteria
from aggregate_store.infrastructure.event_store import EventEnvelopeStore
from aggregate_store.infrastructure.rehydrator import AggregateRehydrator
from aggregate_store.infrastructure.serializer import ISerializer
from aggregate_store.infrastructure.snapshot_store import (
    NeverSnapshotPolicy,
    SnapshotManager,
    SnapshotPolicy,
)

logger = logging.getLogger(__name__)

A = TypeVar("A", bound=Aggregate)


class AggregateRepository(Generic[A]):
    """Load and save aggregates of one type.

    Parameters
    ----------
    rehydrator
        Rebuilds aggregates from snapshots and the domain log.
    coordinator
        Persists pending events and notifications atomically.
    snapshots
        Snapshot manager shared with the rehydrator.
    events, notifications
        Envelope stores bound to the domain and notification logs.
    serializer
        Codec used to decode notifications for readers.
    policy
        Snapshot cadence applied after each save.  Defaults to never.
    """

    def __init__(
        self,
        *,
        rehydrator: AggregateRehydrator[A],
        coordinator: CommitCoordinator,
        snapshots: SnapshotManager,
        events: EventEnvelopeStore,
        notifications: EventEnvelopeStore,
        serializer: ISerializer,
        policy: SnapshotPolicy | None = None,
    ) -> None:
        self._rehydrator = rehydrator
        self._coordinator = coordinator
        self._snapshots = snapshots
        self._events = events
        self._notifications = notifications
        self._serializer = serializer
        self._policy = policy or NeverSnapshotPolicy()

    @property
    def events(self) -> EventEnvelopeStore:
        return self._events

    @property
    def notifications(self) -> EventEnvelopeStore:
        return self._notifications

    @property
    def snapshots(self) -> SnapshotManager:
        return self._snapshots

    # -- Loading -----------------------------------------------------------

    async def load(self, aggregate_id: str, *, use_snapshot: bool = True) -> A | None:
        """Current state of *aggregate_id*, or ``None`` if it was never saved."""
        return await self._rehydrator.load(aggregate_id, use_snapshot=use_snapshot)

    async def get(self, aggregate_id: str, *, use_snapshot: bool = True) -> A:
        """Like :meth:`load` but raises ``AggregateNotFound`` for unknown ids."""
        aggregate = await self.load(aggregate_id, use_snapshot=use_snapshot)
        if aggregate is None:
            raise AggregateNotFound(aggregate_id)
        return aggregate

    async def exists(self, aggregate_id: str) -> bool:
        if await self._events.current_version(aggregate_id) > 0:
            return True
        return await self._snapshots.get_latest(aggregate_id) is not None

    # -- Saving ------------------------------------------------------------

    async def save(self, aggregate: A) -> CommitResult:
        """Commit *aggregate*, then snapshot it if the policy asks for one.

        A failed snapshot never fails the save: the events are already
        committed and the next load simply replays more of them.
        """
        result = await self._coordinator.commit(aggregate)
        if result.event_count == 0:
            return result

        since = await self.count_events_since_snapshot(aggregate.aggregate_id)
        if self._policy.should_snapshot(aggregate, since):
            try:
                await self._snapshots.save_aggregate(aggregate)
            except (AggregateStoreError, NotImplementedError):
                logger.exception(
                    "Snapshot of %s at v%d failed after commit",
                    aggregate.aggregate_id, aggregate.version,
                )
        return result

    async def snapshot(self, aggregate: A) -> bool:
        """Snapshot *aggregate* now, regardless of the policy."""
        return await self._snapshots.save_aggregate(aggregate)

    async def count_events_since_snapshot(self, aggregate_id: str) -> int:
        """Domain events stored after the current snapshot (all, if none)."""
        snapshot = await self._snapshots.get_latest(aggregate_id)
        criteria = EnvelopeCriteria.for_aggregate(aggregate_id)
        if snapshot is not None:
            criteria = criteria.since_version(snapshot.version)
        return await self._events.count(criteria)

    # -- Outbox ------------------------------------------------------------

    async def read_notifications(
        self,
        criteria: EnvelopeCriteria | None = None,
    ) -> list[NotificationEvent]:
        """Decoded notifications matching *criteria*, in criteria order.

        Rows whose type is no longer registered, or whose payload cannot be
        decoded, are skipped with a warning.
        """
        found: list[NotificationEvent] = []
        async for envelope in self._notifications.read(criteria or EnvelopeCriteria()):
            try:
                notification = self._serializer.deserialize(
                    envelope.payload, envelope.event_type_name,
                )
            except SerializationError as exc:
                logger.warning(
                    "Skipping notification %s of %s (%s): %s",
                    envelope.position,
                    envelope.aggregate_id,
                    envelope.event_type_name,
                    exc,
                )
                continue
            found.append(notification)
        return found

    async def count_notifications(self, criteria: EnvelopeCriteria | None = None) -> int:
        return await self._notifications.count(criteria)
