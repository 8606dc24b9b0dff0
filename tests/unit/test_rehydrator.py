"""Tests for ``AggregateRehydrator``: full replay, snapshot + delta, corrupt logs."""

from __future__ import annotations

import logging

import pytest

from aggregate_store.core.errors import InvariantViolation, SerializationError
from aggregate_store.domain.contact import Contact, ContactMemento
from aggregate_store.infrastructure.envelope import EventEnvelope, Snapshot
from aggregate_store.infrastructure.event_store import EventEnvelopeStore
from aggregate_store.infrastructure.rehydrator import AggregateRehydrator
from aggregate_store.infrastructure.snapshot_store import SnapshotManager
from aggregate_store.storage.base import LogName
from aggregate_store.storage.memory import InMemoryStorage


@pytest.fixture
def parts(memory_storage: InMemoryStorage, serializer):
    events = EventEnvelopeStore(memory_storage, batch_size=2)
    snapshots = SnapshotManager(memory_storage, serializer)
    rehydrator = AggregateRehydrator(Contact, events, snapshots, serializer)
    return events, snapshots, rehydrator


def _envelope(serializer, event, version: int, aggregate_id: str = "c1") -> EventEnvelope:
    return EventEnvelope(
        aggregate_id=aggregate_id,
        aggregate_type="Contact",
        aggregate_version=version,
        event_type_name=serializer.type_name_of(event),
        payload=serializer.serialize(event),
    )


async def _write_history(events: EventEnvelopeStore, serializer, *names: str) -> None:
    contact = Contact.create(names[0], "Paris", "1 rue X", "FR", aggregate_id="c1")
    for name in names[1:]:
        contact.rename(name)
    await events.append_batch([
        _envelope(serializer, e, e.aggregate_version)
        for e in contact.get_uncommitted_events()
    ])


class TestFullReplay:
    @pytest.mark.asyncio
    async def test_unknown_id_returns_none(self, parts):
        _, _, rehydrator = parts
        assert await rehydrator.load_full("nobody") is None
        assert await rehydrator.load("nobody") is None

    @pytest.mark.asyncio
    async def test_replays_all_pages(self, parts, serializer):
        events, _, rehydrator = parts
        await _write_history(events, serializer, "A", "B", "C", "D", "E")
        contact = await rehydrator.load_full("c1")
        assert contact.version == 5
        assert contact.name == "E"
        assert contact.city == "Paris"
        assert not contact.has_uncommitted_changes

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_skipped(self, parts, serializer, caplog):
        events, _, rehydrator = parts
        await _write_history(events, serializer, "A", "B")
        await events.append(EventEnvelope(
            aggregate_id="c1",
            aggregate_type="Contact",
            aggregate_version=3,
            event_type_name="ContactArchived",
            payload=b"{}",
        ))
        with caplog.at_level(logging.WARNING):
            contact = await rehydrator.load_full("c1")
        assert contact.version == 3
        assert contact.name == "B"
        assert "ContactArchived" in caplog.text

    @pytest.mark.asyncio
    async def test_undecodable_payload_is_skipped(self, parts, serializer):
        events, _, rehydrator = parts
        await _write_history(events, serializer, "A")
        await events.append(EventEnvelope(
            aggregate_id="c1",
            aggregate_type="Contact",
            aggregate_version=2,
            event_type_name="ContactRenamed",
            payload=b"\xff\xfe",
        ))
        contact = await rehydrator.load_full("c1")
        assert contact.version == 2
        assert contact.name == "A"

    @pytest.mark.asyncio
    async def test_envelope_metadata_wins_over_payload(self, parts, serializer):
        events, _, rehydrator = parts
        contact = Contact.create("A", aggregate_id="other")
        [event] = contact.get_uncommitted_events()
        await events.append(_envelope(serializer, event, 1, aggregate_id="c1"))
        loaded = await rehydrator.load_full("c1")
        assert loaded.aggregate_id == "c1"
        assert loaded.name == "A"

    @pytest.mark.asyncio
    async def test_gap_raises(self, serializer):
        # Bypass the store's contiguity check to simulate a corrupt log.
        storage = InMemoryStorage()
        contact = Contact.create("A", aggregate_id="c1")
        contact.rename("B")
        contact.rename("C")
        first, _, third = contact.get_uncommitted_events()
        storage._tables.logs[LogName.DOMAIN].extend([
            _envelope(serializer, first, 1).with_position(1),
            _envelope(serializer, third, 3).with_position(2),
        ])
        rehydrator = AggregateRehydrator(
            Contact,
            EventEnvelopeStore(storage),
            SnapshotManager(storage, serializer),
            serializer,
        )
        with pytest.raises(InvariantViolation, match="contiguous"):
            await rehydrator.load_full("c1")


class TestSnapshotReplay:
    @pytest.mark.asyncio
    async def test_snapshot_plus_delta(self, parts, serializer):
        events, snapshots, rehydrator = parts
        await _write_history(events, serializer, "A", "B", "C")
        await snapshots.save("c1", 2, ContactMemento(name="B", city="Paris"), aggregate_type="Contact")

        contact = await rehydrator.load_from_snapshot("c1")
        assert contact.version == 3
        assert contact.name == "C"
        assert contact.city == "Paris"

    @pytest.mark.asyncio
    async def test_snapshot_only_reads_delta(self, parts, serializer):
        events, snapshots, rehydrator = parts
        await _write_history(events, serializer, "A", "B", "C")
        # A memento that disagrees with the log proves the prefix was not replayed.
        await snapshots.save("c1", 2, ContactMemento(name="from-snapshot", city="Oslo"), aggregate_type="Contact")
        contact = await rehydrator.load("c1")
        assert contact.city == "Oslo"

    @pytest.mark.asyncio
    async def test_snapshot_at_head(self, parts, serializer):
        events, snapshots, rehydrator = parts
        await _write_history(events, serializer, "A", "B")
        await snapshots.save("c1", 2, ContactMemento(name="B"), aggregate_type="Contact")
        contact = await rehydrator.load("c1")
        assert contact.version == 2
        assert contact.name == "B"

    @pytest.mark.asyncio
    async def test_full_replay_ignores_snapshot(self, parts, serializer):
        events, snapshots, rehydrator = parts
        await _write_history(events, serializer, "A", "B")
        await snapshots.save("c1", 2, ContactMemento(name="stale"), aggregate_type="Contact")
        contact = await rehydrator.load("c1", use_snapshot=False)
        assert contact.name == "B"

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_fails_hard(self, parts, serializer, memory_storage):
        events, _, rehydrator = parts
        await _write_history(events, serializer, "A")
        async with memory_storage.session() as session:
            await session.snapshots.upsert(Snapshot(
                aggregate_id="c1",
                aggregate_type="Contact",
                version=1,
                memento_type_name="ContactMemento",
                memento_payload=b"not json",
            ))
        with pytest.raises(SerializationError):
            await rehydrator.load("c1")

    @pytest.mark.asyncio
    async def test_foreign_snapshot_type(self, parts, serializer, memory_storage):
        events, _, rehydrator = parts
        await _write_history(events, serializer, "A")
        async with memory_storage.session() as session:
            await session.snapshots.upsert(Snapshot(
                aggregate_id="c1",
                aggregate_type="Order",
                version=1,
                memento_type_name="ContactMemento",
                memento_payload=b"{}",
            ))
        with pytest.raises(InvariantViolation):
            await rehydrator.load("c1")
