"""Repository classes for the SQL backend.

Each repository wraps one table and accepts an :class:`AsyncSession`
obtained from :meth:`SqlStorage.session`.  Transaction boundaries belong to
the session; repositories only ``flush``.

Conversion helpers translate between engine records
(:mod:`aggregate_store.infrastructure.envelope`) and ORM rows.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from aggregate_store.core.errors import ConcurrencyConflict
from aggregate_store.core.ids import ensure_utc
from aggregate_store.infrastructure.criteria import Cursor, EnvelopeCriteria
from aggregate_store.infrastructure.envelope import EventEnvelope, Snapshot
from aggregate_store.storage.base import LogName

from .models import (
    DomainEventRecord,
    NotificationEventRecord,
    SnapshotRecord,
)

logger = logging.getLogger(__name__)

EnvelopeRecord = DomainEventRecord | NotificationEventRecord


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _envelope_to_record(
    envelope: EventEnvelope,
    record_cls: type[EnvelopeRecord],
) -> EnvelopeRecord:
    """Convert an :class:`EventEnvelope` to an ORM row (position left to the DB)."""
    record = record_cls(
        envelope_id=envelope.envelope_id,
        aggregate_id=envelope.aggregate_id,
        aggregate_type=envelope.aggregate_type,
        aggregate_version=envelope.aggregate_version,
        event_type_name=envelope.event_type_name,
        payload=envelope.payload,
        created_on=envelope.created_on,
    )
    if isinstance(record, NotificationEventRecord):
        record.processed_on = envelope.processed_on
    return record


def _record_to_envelope(record: EnvelopeRecord) -> EventEnvelope:
    """Convert an ORM row back to an :class:`EventEnvelope`."""
    processed_on = getattr(record, "processed_on", None)
    return EventEnvelope(
        envelope_id=record.envelope_id,
        aggregate_id=record.aggregate_id,
        aggregate_type=record.aggregate_type,
        aggregate_version=record.aggregate_version,
        event_type_name=record.event_type_name,
        payload=bytes(record.payload),
        created_on=ensure_utc(record.created_on),
        position=record.position,
        processed_on=ensure_utc(processed_on) if processed_on is not None else None,
    )


def _record_to_snapshot(record: SnapshotRecord) -> Snapshot:
    return Snapshot(
        aggregate_id=record.aggregate_id,
        aggregate_type=record.aggregate_type,
        version=record.version,
        memento_type_name=record.memento_type_name,
        memento_payload=bytes(record.payload),
        created_on=ensure_utc(record.created_on),
    )


def _structural_filters(
    record_cls: type[EnvelopeRecord],
    criteria: EnvelopeCriteria,
) -> list[Any]:
    """WHERE clauses for every criteria field except the payload predicate."""
    clauses: list[Any] = []
    if criteria.aggregate_id is not None:
        clauses.append(record_cls.aggregate_id == criteria.aggregate_id)
    if criteria.aggregate_type is not None:
        clauses.append(record_cls.aggregate_type == criteria.aggregate_type)
    if criteria.event_types:
        clauses.append(record_cls.event_type_name.in_(criteria.event_types))
    if criteria.after_version is not None:
        clauses.append(record_cls.aggregate_version > criteria.after_version)
    if criteria.up_to_version is not None:
        clauses.append(record_cls.aggregate_version <= criteria.up_to_version)
    if criteria.created_from is not None:
        clauses.append(record_cls.created_on >= criteria.created_from)
    if criteria.created_to is not None:
        clauses.append(record_cls.created_on <= criteria.created_to)
    if criteria.pending_only and record_cls is NotificationEventRecord:
        clauses.append(NotificationEventRecord.processed_on.is_(None))
    return clauses


def _sort_columns(record_cls: type[EnvelopeRecord], criteria: EnvelopeCriteria) -> list[Any]:
    """Columns matching ``criteria.sort_key``, most significant first."""
    if criteria.orders_by_version:
        return [record_cls.aggregate_version, record_cls.position]
    return [record_cls.position, record_cls.aggregate_version]


def _past_cursor(columns: list[Any], cursor: Cursor, descending: bool) -> Any:
    """Row-value comparison ``(first, second) > cursor`` spelled portably."""
    first, second = columns
    head, tail = cursor
    if descending:
        return or_(first < head, and_(first == head, second < tail))
    return or_(first > head, and_(first == head, second > tail))


# ---------------------------------------------------------------------------
# EnvelopeRepo
# ---------------------------------------------------------------------------

class EnvelopeRepo:
    """Append-only access to one envelope table."""

    def __init__(
        self,
        session: AsyncSession,
        record_cls: type[EnvelopeRecord],
        *,
        unique_versions: bool,
    ) -> None:
        self._session = session
        self._record_cls = record_cls
        self._unique_versions = unique_versions

    async def current_version(self, aggregate_id: str) -> int:
        stmt = select(func.max(self._record_cls.aggregate_version)).where(
            self._record_cls.aggregate_id == aggregate_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() or 0

    async def check_version(self, aggregate_id: str, expected_version: int) -> None:
        if not self._unique_versions:
            raise ValueError(f"{self._record_cls.__tablename__} has no stream versions")
        current = await self.current_version(aggregate_id)
        if current != expected_version:
            raise ConcurrencyConflict(aggregate_id, expected_version, current)

    async def append(
        self,
        envelopes: Sequence[EventEnvelope],
        *,
        expected_version: int | None = None,
    ) -> list[EventEnvelope]:
        """Insert *envelopes* and flush so constraint violations surface here.

        Args:
            envelopes: Envelopes in stream order.
            expected_version: Stored version the caller based its changes on.

        Returns:
            The envelopes with their database ``position``.

        Raises:
            ConcurrencyConflict: Version check or unique constraint failed.
        """
        if self._unique_versions:
            await self._check_versions(envelopes, expected_version)
        elif expected_version is not None:
            raise ValueError(
                f"{self._record_cls.__tablename__} does not take an expected_version"
            )

        records = [_envelope_to_record(e, self._record_cls) for e in envelopes]
        self._session.add_all(records)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            first = envelopes[0]
            logger.warning(
                "Unique constraint rejected append to %s for %s v%d",
                self._record_cls.__tablename__,
                first.aggregate_id,
                first.aggregate_version,
            )
            raise ConcurrencyConflict(
                first.aggregate_id, first.aggregate_version - 1, None,
            ) from exc

        return [
            e.with_position(r.position) for e, r in zip(envelopes, records)
        ]

    async def _check_versions(
        self,
        envelopes: Sequence[EventEnvelope],
        expected_version: int | None,
    ) -> None:
        seen: dict[str, int] = {}
        for envelope in envelopes:
            aggregate_id = envelope.aggregate_id
            if aggregate_id not in seen:
                current = await self.current_version(aggregate_id)
                if expected_version is not None and expected_version != current:
                    raise ConcurrencyConflict(aggregate_id, expected_version, current)
                seen[aggregate_id] = current
            if envelope.aggregate_version != seen[aggregate_id] + 1:
                raise ConcurrencyConflict(
                    aggregate_id, envelope.aggregate_version - 1, seen[aggregate_id],
                )
            seen[aggregate_id] = envelope.aggregate_version

    async def fetch_page(
        self,
        criteria: EnvelopeCriteria,
        *,
        cursor: Cursor | None,
        limit: int,
    ) -> list[EventEnvelope]:
        """One keyset page in criteria order."""
        rc = self._record_cls
        keys = _sort_columns(rc, criteria)
        stmt = select(rc).where(*_structural_filters(rc, criteria))
        if cursor is not None:
            stmt = stmt.where(_past_cursor(keys, cursor, criteria.descending))
        stmt = stmt.order_by(
            *(k.desc() if criteria.descending else k.asc() for k in keys)
        ).limit(limit)

        result = await self._session.execute(stmt)
        records: Sequence[EnvelopeRecord] = result.scalars().all()
        return [_record_to_envelope(r) for r in records]

    async def count(self, criteria: EnvelopeCriteria) -> int:
        rc = self._record_cls
        stmt = (
            select(func.count())
            .select_from(rc)
            .where(*_structural_filters(rc, criteria))
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def mark_processed(self, positions: Sequence[int], processed_on: datetime) -> int:
        """Stamp still-pending outbox rows; returns the number updated."""
        if self._record_cls is not NotificationEventRecord:
            raise ValueError(f"{self._record_cls.__tablename__} is append-only")
        if not positions:
            return 0
        stmt = (
            update(NotificationEventRecord)
            .where(
                NotificationEventRecord.position.in_(list(positions)),
                NotificationEventRecord.processed_on.is_(None),
            )
            .values(processed_on=processed_on)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# SnapshotRepo
# ---------------------------------------------------------------------------

class SnapshotRepo:
    """Version-guarded upsert over the single snapshot row per aggregate."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _load(self, aggregate_id: str) -> SnapshotRecord | None:
        stmt = (
            select(SnapshotRecord)
            .where(SnapshotRecord.aggregate_id == aggregate_id)
            .with_for_update()
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, aggregate_id: str) -> Snapshot | None:
        stmt = select(SnapshotRecord).where(SnapshotRecord.aggregate_id == aggregate_id)
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            return None
        return _record_to_snapshot(record)

    async def upsert(self, snapshot: Snapshot) -> bool:
        """Update the row in place, or insert it if the aggregate has none.

        Returns:
            ``False`` if a strictly newer snapshot is already stored.

        Raises:
            ConcurrencyConflict: A concurrent writer inserted the first row.
        """
        existing = await self._load(snapshot.aggregate_id)
        if existing is not None:
            if existing.version > snapshot.version:
                return False
            existing.aggregate_type = snapshot.aggregate_type
            existing.version = snapshot.version
            existing.memento_type_name = snapshot.memento_type_name
            existing.payload = snapshot.memento_payload
            existing.created_on = snapshot.created_on
            await self._session.flush()
            logger.debug("Updated snapshot %s -> v%d", snapshot.aggregate_id, snapshot.version)
            return True

        self._session.add(SnapshotRecord(
            aggregate_id=snapshot.aggregate_id,
            aggregate_type=snapshot.aggregate_type,
            version=snapshot.version,
            memento_type_name=snapshot.memento_type_name,
            payload=snapshot.memento_payload,
            created_on=snapshot.created_on,
        ))
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                snapshot.aggregate_id, snapshot.version, None,
            ) from exc
        logger.debug("Inserted snapshot %s v%d", snapshot.aggregate_id, snapshot.version)
        return True

    async def delete(self, aggregate_id: str) -> bool:
        record = await self._load(aggregate_id)
        if record is None:
            return False
        await self._session.delete(record)
        await self._session.flush()
        return True


# ---------------------------------------------------------------------------
# Session facade
# ---------------------------------------------------------------------------

class SqlStorageSession:
    """Bundles the three repositories over one :class:`AsyncSession`."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._logs = {
            LogName.DOMAIN: EnvelopeRepo(session, DomainEventRecord, unique_versions=True),
            LogName.NOTIFICATION: EnvelopeRepo(
                session, NotificationEventRecord, unique_versions=False,
            ),
        }
        self._snapshots = SnapshotRepo(session)

    @property
    def domain_events(self) -> EnvelopeRepo:
        return self._logs[LogName.DOMAIN]

    @property
    def notification_events(self) -> EnvelopeRepo:
        return self._logs[LogName.NOTIFICATION]

    @property
    def snapshots(self) -> SnapshotRepo:
        return self._snapshots

    def log(self, name: LogName) -> EnvelopeRepo:
        return self._logs[name]
