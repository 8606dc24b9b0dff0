"""In-memory backend.  No persistence across restarts.

Good for: unit tests, local development, single-process tools.

Writes are staged per session and applied under one ``asyncio.Lock`` when
the session exits cleanly, so a half-finished commit is never visible.
Version uniqueness on the domain log is re-checked at apply time: of two
sessions that both staged version N for an aggregate, the second to exit
fails with ``ConcurrencyConflict``.  Version guards taken with
``check_version`` are re-checked the same way.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime

from aggregate_store.core.errors import ConcurrencyConflict
from aggregate_store.infrastructure.criteria import Cursor, EnvelopeCriteria
from aggregate_store.infrastructure.envelope import EventEnvelope, Snapshot
from aggregate_store.storage.base import LogName

logger = logging.getLogger(__name__)


class _Tables:
    """Committed state shared by every session of one storage."""

    def __init__(self) -> None:
        self.logs: dict[LogName, list[EventEnvelope]] = {
            LogName.DOMAIN: [],
            LogName.NOTIFICATION: [],
        }
        self.positions: dict[LogName, int] = {name: 0 for name in LogName}
        self.snapshots: dict[str, Snapshot] = {}

    def stream_version(self, aggregate_id: str) -> int:
        versions = [
            e.aggregate_version
            for e in self.logs[LogName.DOMAIN]
            if e.aggregate_id == aggregate_id
        ]
        return max(versions, default=0)


class _MemoryLog:
    def __init__(self, tables: _Tables, name: LogName) -> None:
        self._tables = tables
        self._name = name
        self.staged: list[EventEnvelope] = []
        self.guards: dict[str, int] = {}
        self.marks: dict[int, datetime] = {}

    @property
    def unique_versions(self) -> bool:
        return self._name is LogName.DOMAIN

    def _visible(self) -> list[EventEnvelope]:
        committed = [
            e.processed_at(self.marks[e.position])
            if e.position in self.marks else e
            for e in self._tables.logs[self._name]
        ]
        return [*committed, *self.staged]

    async def current_version(self, aggregate_id: str) -> int:
        return max(
            (e.aggregate_version for e in self._visible() if e.aggregate_id == aggregate_id),
            default=0,
        )

    async def check_version(self, aggregate_id: str, expected_version: int) -> None:
        if not self.unique_versions:
            raise ValueError(f"{self._name.value} has no stream versions")
        current = await self.current_version(aggregate_id)
        if current != expected_version:
            raise ConcurrencyConflict(aggregate_id, expected_version, current)
        self.guards[aggregate_id] = expected_version

    async def append(
        self,
        envelopes: Sequence[EventEnvelope],
        *,
        expected_version: int | None = None,
    ) -> list[EventEnvelope]:
        if self.unique_versions:
            by_aggregate: dict[str, int] = {}
            for envelope in envelopes:
                aggregate_id = envelope.aggregate_id
                if aggregate_id not in by_aggregate:
                    current = await self.current_version(aggregate_id)
                    if expected_version is not None and expected_version != current:
                        raise ConcurrencyConflict(aggregate_id, expected_version, current)
                    by_aggregate[aggregate_id] = current
                if envelope.aggregate_version != by_aggregate[aggregate_id] + 1:
                    raise ConcurrencyConflict(
                        aggregate_id,
                        envelope.aggregate_version - 1,
                        by_aggregate[aggregate_id],
                    )
                by_aggregate[aggregate_id] = envelope.aggregate_version
        elif expected_version is not None:
            raise ValueError(f"{self._name.value} does not take an expected_version")

        # Positions are provisional until apply.
        base = self._tables.positions[self._name] + len(self.staged)
        placed = [e.with_position(base + i + 1) for i, e in enumerate(envelopes)]
        self.staged.extend(placed)
        return placed

    async def fetch_page(
        self,
        criteria: EnvelopeCriteria,
        *,
        cursor: Cursor | None,
        limit: int,
    ) -> list[EventEnvelope]:
        rows = sorted(
            (e for e in self._visible() if criteria.matches_structure(e)),
            key=criteria.sort_key,
            reverse=criteria.descending,
        )
        if cursor is not None:
            rows = [e for e in rows if criteria.is_past(e, cursor)]
        return rows[:limit]

    async def count(self, criteria: EnvelopeCriteria) -> int:
        return sum(1 for e in self._visible() if criteria.matches_structure(e))

    async def mark_processed(self, positions: Sequence[int], processed_on: datetime) -> int:
        if self.unique_versions:
            raise ValueError(f"{self._name.value} is append-only")
        wanted = set(positions)
        changed = 0
        for envelope in self._tables.logs[self._name]:
            if envelope.position in wanted and envelope.is_pending:
                if envelope.position not in self.marks:
                    self.marks[envelope.position] = processed_on
                    changed += 1
        for i, envelope in enumerate(self.staged):
            if envelope.position in wanted and envelope.is_pending:
                self.staged[i] = envelope.processed_at(processed_on)
                changed += 1
        return changed


class _MemorySnapshots:
    def __init__(self, tables: _Tables) -> None:
        self._tables = tables
        self.staged: dict[str, Snapshot | None] = {}

    async def get(self, aggregate_id: str) -> Snapshot | None:
        if aggregate_id in self.staged:
            return self.staged[aggregate_id]
        return self._tables.snapshots.get(aggregate_id)

    async def upsert(self, snapshot: Snapshot) -> bool:
        current = await self.get(snapshot.aggregate_id)
        if current is not None and current.version > snapshot.version:
            return False
        self.staged[snapshot.aggregate_id] = snapshot
        return True

    async def delete(self, aggregate_id: str) -> bool:
        existed = await self.get(aggregate_id) is not None
        self.staged[aggregate_id] = None
        return existed


class _MemorySession:
    def __init__(self, tables: _Tables) -> None:
        self._tables = tables
        self._logs = {name: _MemoryLog(tables, name) for name in LogName}
        self._snapshots = _MemorySnapshots(tables)

    @property
    def domain_events(self) -> _MemoryLog:
        return self._logs[LogName.DOMAIN]

    @property
    def notification_events(self) -> _MemoryLog:
        return self._logs[LogName.NOTIFICATION]

    @property
    def snapshots(self) -> _MemorySnapshots:
        return self._snapshots

    def log(self, name: LogName) -> _MemoryLog:
        return self._logs[name]

    def apply(self) -> None:
        """Validate then publish staged writes.  Caller holds the lock."""
        for aggregate_id, expected in self.domain_events.guards.items():
            current = self._tables.stream_version(aggregate_id)
            if current != expected:
                raise ConcurrencyConflict(aggregate_id, expected, current)

        committed_versions: dict[str, int] = {}
        for envelope in self.domain_events.staged:
            aggregate_id = envelope.aggregate_id
            if aggregate_id not in committed_versions:
                committed_versions[aggregate_id] = self._tables.stream_version(aggregate_id)
            if envelope.aggregate_version != committed_versions[aggregate_id] + 1:
                raise ConcurrencyConflict(
                    aggregate_id,
                    envelope.aggregate_version - 1,
                    committed_versions[aggregate_id],
                )
            committed_versions[aggregate_id] = envelope.aggregate_version

        for name, log in self._logs.items():
            if log.marks:
                self._tables.logs[name] = [
                    e.processed_at(log.marks[e.position])
                    if e.position in log.marks and e.is_pending else e
                    for e in self._tables.logs[name]
                ]

        for name, log in self._logs.items():
            for envelope in log.staged:
                self._tables.positions[name] += 1
                self._tables.logs[name].append(
                    envelope.with_position(self._tables.positions[name])
                )

        for aggregate_id, snapshot in self._snapshots.staged.items():
            if snapshot is None:
                self._tables.snapshots.pop(aggregate_id, None)
                continue
            current = self._tables.snapshots.get(aggregate_id)
            if current is not None and current.version > snapshot.version:
                logger.debug(
                    "Keeping newer snapshot v%d for %s over v%d",
                    current.version, aggregate_id, snapshot.version,
                )
                continue
            self._tables.snapshots[aggregate_id] = snapshot


class InMemoryStorage:
    """List-backed storage with all-or-nothing sessions."""

    def __init__(self) -> None:
        self._tables = _Tables()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[_MemorySession]:
        session = _MemorySession(self._tables)
        yield session
        async with self._lock:
            session.apply()

    async def close(self) -> None:
        pass

    # -- Testing helpers ---------------------------------------------------

    def envelopes(self, name: LogName = LogName.DOMAIN) -> list[EventEnvelope]:
        """Committed envelopes of one log, in append order."""
        return list(self._tables.logs[name])

    def snapshot_rows(self) -> list[Snapshot]:
        return list(self._tables.snapshots.values())

    def clear(self) -> None:
        """Remove everything.  Testing only."""
        self._tables = _Tables()
