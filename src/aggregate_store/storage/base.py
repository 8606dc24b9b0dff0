"""Backing-store contract consumed by the engine.

A backend exposes *sessions*.  Everything done through one session is
committed all-or-nothing when the ``async with`` block exits normally and
discarded when it exits with any exception, cancellation included.  Reads
inside a session see committed rows plus the session's own writes.

Each session exposes three logical tables:

*  ``domain_events``        envelope log, unique ``(aggregate_id, version)``.
*  ``notification_events``  envelope log (outbox), no version uniqueness,
                            rows carry a delivery mark.
*  ``snapshots``            at most one row per ``aggregate_id``.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from enum import Enum
from typing import Protocol

from aggregate_store.infrastructure.criteria import Cursor, EnvelopeCriteria
from aggregate_store.infrastructure.envelope import EventEnvelope, Snapshot


class LogName(str, Enum):
    DOMAIN = "domain_events"
    NOTIFICATION = "notification_events"


class IEnvelopeLog(Protocol):
    """One append-only envelope table, bound to a session."""

    async def append(
        self,
        envelopes: Sequence[EventEnvelope],
        *,
        expected_version: int | None = None,
    ) -> list[EventEnvelope]:
        """Stage *envelopes*; returns them with ``position`` assigned.

        On the domain log raises ``ConcurrencyConflict`` when
        ``expected_version`` differs from the stored version or a version
        is already taken.  The notification log has no versions to check
        and raises ``ValueError`` if ``expected_version`` is given.
        """
        ...

    async def current_version(self, aggregate_id: str) -> int:
        """Highest stored ``aggregate_version`` for the id, 0 if none."""
        ...

    async def check_version(self, aggregate_id: str, expected_version: int) -> None:
        """Raise ``ConcurrencyConflict`` unless the stream is at *expected_version*.

        Guards writes that append no domain events, such as a
        notification-only commit.  Domain log only.
        """
        ...

    async def fetch_page(
        self,
        criteria: EnvelopeCriteria,
        *,
        cursor: Cursor | None,
        limit: int,
    ) -> list[EventEnvelope]:
        """Up to *limit* envelopes matching the structural criteria, in
        criteria order, strictly past *cursor* (``criteria.sort_key`` of the
        last row seen).

        The payload predicate and ``max_count`` are not applied here.
        """
        ...

    async def count(self, criteria: EnvelopeCriteria) -> int:
        """Count envelopes matching the structural criteria."""
        ...

    async def mark_processed(self, positions: Sequence[int], processed_on: datetime) -> int:
        """Set the delivery mark on still-pending rows; returns how many changed.

        Notification log only; the domain log raises ``ValueError``.
        """
        ...


class ISnapshotTable(Protocol):
    async def get(self, aggregate_id: str) -> Snapshot | None:
        ...

    async def upsert(self, snapshot: Snapshot) -> bool:
        """Replace the row for the aggregate unless a strictly newer one
        exists.  Returns ``True`` when *snapshot* is now current."""
        ...

    async def delete(self, aggregate_id: str) -> bool:
        ...


class IStorageSession(Protocol):
    @property
    def domain_events(self) -> IEnvelopeLog: ...

    @property
    def notification_events(self) -> IEnvelopeLog: ...

    @property
    def snapshots(self) -> ISnapshotTable: ...

    def log(self, name: LogName) -> IEnvelopeLog:
        ...


class IStorage(Protocol):
    def session(self) -> AbstractAsyncContextManager[IStorageSession]:
        ...

    async def close(self) -> None:
        ...
