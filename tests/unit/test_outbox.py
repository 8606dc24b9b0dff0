"""Tests for ``NotificationRelay`` (``infrastructure/outbox.py``)."""

from __future__ import annotations

import asyncio

import pytest

from aggregate_store.core.errors import StoreUnavailable
from aggregate_store.domain.contact import Contact, ContactNameChangeNotified
from aggregate_store.infrastructure.criteria import EnvelopeCriteria
from aggregate_store.infrastructure.envelope import EventEnvelope
from aggregate_store.infrastructure.event_bus import InMemoryEventBus
from aggregate_store.infrastructure.event_store import EventEnvelopeStore
from aggregate_store.infrastructure.outbox import NotificationRelay
from aggregate_store.storage.base import LogName


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _RecordingBus(InMemoryEventBus):
    """Bus that records every notification name and can refuse one of them."""

    def __init__(self, refuse: str | None = None) -> None:
        super().__init__()
        self.received: list[str] = []
        self._refuse = refuse

    async def publish(self, event) -> None:
        if event.new_name == self._refuse:
            raise StoreUnavailable("broker down")
        self.received.append(event.new_name)
        await super().publish(event)


async def _save_renames(repository, *names: str, aggregate_id: str = "c1") -> None:
    contact = Contact.create("Ann", aggregate_id=aggregate_id)
    for name in names:
        contact.rename(name)
    await repository.save(contact)


async def _pending(storage) -> list[EventEnvelope]:
    store = EventEnvelopeStore(storage, LogName.NOTIFICATION)
    return await store.read_all(EnvelopeCriteria().pending())


# ===========================================================================
# One pass
# ===========================================================================

class TestRelayPending:
    @pytest.mark.asyncio
    async def test_publishes_in_append_order_and_marks(
        self, storage, serializer, clock, repository,
    ):
        await _save_renames(repository, "Bea", "Cid")
        await _save_renames(repository, "Eve", aggregate_id="c2")
        bus = _RecordingBus()
        relay = NotificationRelay(storage, serializer, bus, clock=clock)

        result = await relay.relay_pending()

        assert bus.received == ["Bea", "Cid", "Eve"]
        assert (result.published, result.left_pending, result.batches) == (3, 0, 1)
        assert await _pending(storage) == []
        stored = await EventEnvelopeStore(storage, LogName.NOTIFICATION).read_all(
            EnvelopeCriteria()
        )
        assert all(e.processed_on is not None for e in stored)

    @pytest.mark.asyncio
    async def test_second_pass_publishes_nothing(self, storage, serializer, repository):
        await _save_renames(repository, "Bea")
        bus = _RecordingBus()
        relay = NotificationRelay(storage, serializer, bus)

        await relay.relay_pending()
        again = await relay.relay_pending()

        assert bus.received == ["Bea"]
        assert again.published == 0
        assert again.batches == 0

    @pytest.mark.asyncio
    async def test_batches_of_configured_size(self, storage, serializer, repository):
        await _save_renames(repository, "B", "C", "D", "E", "F")
        bus = _RecordingBus()
        relay = NotificationRelay(storage, serializer, bus, batch_size=2)

        result = await relay.relay_pending()

        assert bus.received == ["B", "C", "D", "E", "F"]
        assert result.batches == 3

    @pytest.mark.asyncio
    async def test_subscribers_receive_notifications(self, storage, serializer, repository):
        await _save_renames(repository, "Bea")
        bus = InMemoryEventBus()
        seen: list[ContactNameChangeNotified] = []

        async def on_renamed(event):
            seen.append(event)

        bus.subscribe(ContactNameChangeNotified, on_renamed)
        await NotificationRelay(storage, serializer, bus).relay_pending()

        [note] = seen
        assert (note.aggregate_id, note.old_name, note.new_name) == ("c1", "Ann", "Bea")


# ===========================================================================
# Rows left pending
# ===========================================================================

class TestRowsLeftPending:
    @pytest.mark.asyncio
    async def test_unknown_type_stays_pending(self, storage, serializer, repository):
        async with storage.session() as session:
            await session.notification_events.append([EventEnvelope(
                aggregate_id="c0",
                aggregate_type="Contact",
                aggregate_version=1,
                event_type_name="ContactArchivedNotified",
                payload=b"{}",
            )])
        await _save_renames(repository, "Bea")
        bus = _RecordingBus()

        result = await NotificationRelay(storage, serializer, bus, batch_size=1).relay_pending()

        assert bus.received == ["Bea"]
        assert (result.published, result.skipped) == (1, 1)
        [left] = await _pending(storage)
        assert left.event_type_name == "ContactArchivedNotified"

    @pytest.mark.asyncio
    async def test_failed_publish_is_retried_next_pass(self, storage, serializer, repository):
        await _save_renames(repository, "Bea", "Cid")

        refusing = _RecordingBus(refuse="Bea")
        first = await NotificationRelay(storage, serializer, refusing).relay_pending()
        assert refusing.received == ["Cid"]
        assert first.failed == 1
        assert len(await _pending(storage)) == 1

        healthy = _RecordingBus()
        second = await NotificationRelay(storage, serializer, healthy).relay_pending()
        assert healthy.received == ["Bea"]
        assert second.published == 1
        assert await _pending(storage) == []

    @pytest.mark.asyncio
    async def test_pending_count_through_repository(self, storage, serializer, repository):
        await _save_renames(repository, "Bea", "Cid")
        pending = EnvelopeCriteria().pending()
        assert await repository.count_notifications(pending) == 2

        await NotificationRelay(storage, serializer, _RecordingBus()).relay_pending()

        assert await repository.count_notifications(pending) == 0
        assert await repository.count_notifications() == 2


# ===========================================================================
# Background loop
# ===========================================================================

class TestBackgroundRelay:
    @pytest.mark.asyncio
    async def test_start_relays_then_stop(self, memory_storage, serializer, repo_factory):
        repository = repo_factory(memory_storage, serializer)
        await _save_renames(repository, "Bea")
        bus = _RecordingBus()
        relay = NotificationRelay(memory_storage, serializer, bus, interval=0.01)

        await relay.start()
        assert relay.running
        for _ in range(100):
            if bus.received:
                break
            await asyncio.sleep(0.01)
        await relay.stop()

        assert bus.received == ["Bea"]
        assert not relay.running

    @pytest.mark.asyncio
    async def test_stop_without_start(self, memory_storage, serializer):
        relay = NotificationRelay(memory_storage, serializer, InMemoryEventBus())
        await relay.stop()
        assert not relay.running

    def test_arguments_validated(self, memory_storage, serializer):
        with pytest.raises(ValueError):
            NotificationRelay(memory_storage, serializer, InMemoryEventBus(), batch_size=0)
        with pytest.raises(ValueError):
            NotificationRelay(memory_storage, serializer, InMemoryEventBus(), interval=0)
