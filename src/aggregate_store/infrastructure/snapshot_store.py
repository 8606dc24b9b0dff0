"""Snapshot manager and snapshot cadence policies.

A snapshot is the serialized memento of one aggregate at a committed
version.  Each aggregate has at most one, replaced in place by a newer one.

Design invariants
-----------------
1.  ``save()`` is a **version-guarded upsert** in one storage session:
    readers see the old row or the new row, never none and never two.
2.  A snapshot is never ahead of the domain log.  Saving version V while
    the log holds fewer than V envelopes raises ``InvariantViolation``.
3.  An older snapshot never replaces a newer one; ``save()`` returns
    ``False`` and keeps the stored row.
4.  ``restore()`` fails hard.  A memento that cannot be decoded raises
    ``SerializationError`` instead of producing a partial aggregate.

The manager does not decide *when* to snapshot; that is the caller's
policy (see :class:`EveryNEventsPolicy`).
"""

from __future__ import annotations

import logging
from typing import Protocol

from aggregate_store.core.clock import IClock, WallClock
from aggregate_store.core.errors import InvariantViolation, SerializationError
from aggregate_store.domain.aggregate import Aggregate
from aggregate_store.domain.events import Memento
from aggregate_store.infrastructure.envelope import Snapshot
from aggregate_store.infrastructure.serializer import ISerializer
from aggregate_store.storage.base import IStorage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

class SnapshotPolicy(Protocol):
    """Decides whether an aggregate should be snapshotted after a commit."""

    def should_snapshot(self, aggregate: Aggregate, events_since_snapshot: int) -> bool:
        ...


class EveryNEventsPolicy:
    """Snapshot once *interval* events have accumulated since the last one."""

    def __init__(self, interval: int = 50) -> None:
        if interval < 1:
            raise ValueError("interval must be at least 1")
        self.interval = interval

    def should_snapshot(self, aggregate: Aggregate, events_since_snapshot: int) -> bool:
        return events_since_snapshot >= self.interval


class NeverSnapshotPolicy:
    def should_snapshot(self, aggregate: Aggregate, events_since_snapshot: int) -> bool:
        return False


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class SnapshotManager:
    """Reads and writes the single current snapshot per aggregate."""

    def __init__(
        self,
        storage: IStorage,
        serializer: ISerializer,
        clock: IClock | None = None,
    ) -> None:
        self._storage = storage
        self._serializer = serializer
        self._clock = clock or WallClock()

    async def get_latest(self, aggregate_id: str) -> Snapshot | None:
        async with self._storage.session() as session:
            return await session.snapshots.get(aggregate_id)

    async def save(
        self,
        aggregate_id: str,
        version: int,
        memento: Memento,
        *,
        aggregate_type: str,
    ) -> bool:
        """Store *memento* as the snapshot of *aggregate_id* at *version*.

        Args:
            aggregate_id: Aggregate the memento was captured from.
            version: Committed aggregate version at capture time.
            memento: Captured state.
            aggregate_type: Type name recorded alongside the row.

        Returns:
            ``True`` if this snapshot is now current, ``False`` if a newer
            one was already stored.

        Raises:
            InvariantViolation: *version* is ahead of the domain log.
            SerializationError: *memento* is not a registered type.
        """
        if version < 1:
            raise ValueError(f"Snapshot version must be at least 1, got {version}")

        snapshot = Snapshot(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            version=version,
            memento_type_name=self._serializer.type_name_of(memento),
            memento_payload=self._serializer.serialize(memento),
            created_on=self._clock.now(),
        )

        async with self._storage.session() as session:
            log_version = await session.domain_events.current_version(aggregate_id)
            if version > log_version:
                raise InvariantViolation(
                    f"Snapshot of {aggregate_id} at v{version} is ahead of "
                    f"the log (v{log_version})"
                )
            saved = await session.snapshots.upsert(snapshot)

        if saved:
            logger.info("Saved snapshot of %s at v%d", aggregate_id, version)
        else:
            logger.info(
                "Skipped snapshot of %s at v%d: a newer one exists",
                aggregate_id, version,
            )
        return saved

    async def save_aggregate(self, aggregate: Aggregate) -> bool:
        """Snapshot *aggregate* at its current, fully committed version."""
        if aggregate.has_uncommitted_changes:
            raise InvariantViolation(
                f"Cannot snapshot {aggregate.aggregate_id} with uncommitted changes"
            )
        return await self.save(
            aggregate.aggregate_id,
            aggregate.version,
            aggregate.create_memento(),
            aggregate_type=aggregate.aggregate_type,
        )

    def restore(self, snapshot: Snapshot) -> Memento:
        """Decode the memento stored in *snapshot*.

        Raises:
            SerializationError: Unknown memento type or undecodable payload.
        """
        memento = self._serializer.deserialize(
            snapshot.memento_payload, snapshot.memento_type_name,
        )
        if not isinstance(memento, Memento):
            raise SerializationError(
                f"Snapshot of {snapshot.aggregate_id} holds "
                f"{type(memento).__name__}, not a Memento"
            )
        return memento

    async def delete(self, aggregate_id: str) -> bool:
        """Drop the snapshot so the next load replays the full history."""
        async with self._storage.session() as session:
            deleted = await session.snapshots.delete(aggregate_id)
        if deleted:
            logger.info("Deleted snapshot of %s", aggregate_id)
        return deleted
