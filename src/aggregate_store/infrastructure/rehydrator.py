"""Rebuild aggregates from their event history.

Two paths produce the same state:

*  **full replay**: a fresh aggregate plus every envelope of its stream.
*  **snapshot + delta**: the latest memento, then only the envelopes
   with a version above the snapshot's.

An envelope whose type tag is no longer registered, or whose payload no
longer decodes, is skipped with a warning.  The aggregate's version still
moves past it, so the next commit's expected version matches the log.  A
gap or reordering in the stream is corruption and raises
``InvariantViolation``.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import AsyncIterator
from typing import Generic, TypeVar

from aggregate_store.core.errors import InvariantViolation, SerializationError
from aggregate_store.domain.aggregate import Aggregate
from aggregate_store.domain.events import DomainEvent
from aggregate_store.infrastructure.envelope import EventEnvelope
from aggregate_store.infrastructure.event_store import EventEnvelopeStore
from aggregate_store.infrastructure.serializer import ISerializer
from aggregate_store.infrastructure.snapshot_store import SnapshotManager

logger = logging.getLogger(__name__)

A = TypeVar("A", bound=Aggregate)


class AggregateRehydrator(Generic[A]):
    """Loads aggregates of one type from a domain log and snapshot table."""

    def __init__(
        self,
        aggregate_cls: type[A],
        event_store: EventEnvelopeStore,
        snapshot_manager: SnapshotManager,
        serializer: ISerializer,
    ) -> None:
        self._aggregate_cls = aggregate_cls
        self._event_store = event_store
        self._snapshots = snapshot_manager
        self._serializer = serializer

    @property
    def aggregate_cls(self) -> type[A]:
        return self._aggregate_cls

    async def load(self, aggregate_id: str, *, use_snapshot: bool = True) -> A | None:
        """Current state of *aggregate_id*, or ``None`` if it has no history."""
        if use_snapshot:
            return await self.load_from_snapshot(aggregate_id)
        return await self.load_full(aggregate_id)

    async def load_full(self, aggregate_id: str) -> A | None:
        """Replay the whole stream onto a fresh aggregate."""
        aggregate = self._aggregate_cls(aggregate_id)
        await self._replay(aggregate, self._event_store.read_stream(aggregate_id))
        if aggregate.is_empty:
            return None
        logger.debug("Rehydrated %r by full replay", aggregate)
        return aggregate

    async def load_from_snapshot(self, aggregate_id: str) -> A | None:
        """Restore the latest snapshot, then replay the envelopes after it.

        Falls back to full replay when no snapshot exists.

        Raises:
            SerializationError: The snapshot exists but cannot be restored.
            InvariantViolation: The snapshot belongs to another aggregate type.
        """
        snapshot = await self._snapshots.get_latest(aggregate_id)
        if snapshot is None:
            return await self.load_full(aggregate_id)

        aggregate = self._aggregate_cls(aggregate_id)
        if snapshot.aggregate_type != aggregate.aggregate_type:
            raise InvariantViolation(
                f"Snapshot of {aggregate_id} is a {snapshot.aggregate_type}, "
                f"not a {aggregate.aggregate_type}"
            )
        aggregate.restore_memento(self._snapshots.restore(snapshot), snapshot.version)

        delta = self._event_store.read_stream(aggregate_id, from_version=snapshot.version)
        applied = await self._replay(aggregate, delta)
        logger.debug(
            "Rehydrated %r from snapshot v%d + %d event(s)",
            aggregate, snapshot.version, applied,
        )
        return aggregate

    # -- Internals ---------------------------------------------------------

    async def _replay(
        self,
        aggregate: A,
        envelopes: AsyncIterator[EventEnvelope],
    ) -> int:
        applied = 0
        async for envelope in envelopes:
            expected = aggregate.version + 1
            if envelope.aggregate_version != expected:
                raise InvariantViolation(
                    f"Stream {envelope.aggregate_id} is not contiguous: expected "
                    f"v{expected}, found v{envelope.aggregate_version}"
                )
            event = self._decode(envelope)
            if event is None:
                aggregate.skip_version(envelope.aggregate_version)
            else:
                aggregate.load_from_history(event)
            applied += 1
        return applied

    def _decode(self, envelope: EventEnvelope) -> DomainEvent | None:
        try:
            event = self._serializer.deserialize(
                envelope.payload, envelope.event_type_name,
            )
        except SerializationError as exc:
            logger.warning(
                "Skipping %s v%d (%s): %s",
                envelope.aggregate_id,
                envelope.aggregate_version,
                envelope.event_type_name,
                exc,
            )
            return None
        if not isinstance(event, DomainEvent):
            logger.warning(
                "Skipping %s v%d: %s is not a domain event",
                envelope.aggregate_id,
                envelope.aggregate_version,
                envelope.event_type_name,
            )
            return None
        # The envelope is authoritative for stream metadata.
        if (
            event.aggregate_id != envelope.aggregate_id
            or event.aggregate_version != envelope.aggregate_version
        ):
            event = dataclasses.replace(
                event,
                aggregate_id=envelope.aggregate_id,
                aggregate_version=envelope.aggregate_version,
            )
        return event
