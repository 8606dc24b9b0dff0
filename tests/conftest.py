"""Shared fixtures for the aggregate-store test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from aggregate_store.core.clock import SimClock
from aggregate_store.domain.contact import Contact, register_contact_types
from aggregate_store.infrastructure.commit import CommitCoordinator
from aggregate_store.infrastructure.event_bus import InMemoryEventBus
from aggregate_store.infrastructure.event_store import EventEnvelopeStore
from aggregate_store.infrastructure.rehydrator import AggregateRehydrator
from aggregate_store.infrastructure.repository import AggregateRepository
from aggregate_store.infrastructure.serializer import EventRegistry, JsonSerializer
from aggregate_store.infrastructure.snapshot_store import SnapshotManager
from aggregate_store.storage.base import LogName
from aggregate_store.storage.memory import InMemoryStorage
from aggregate_store.storage.sql.connection import SqlStorage


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

@pytest.fixture
def registry() -> EventRegistry:
    """Registry holding every contact type (not frozen)."""
    return register_contact_types(EventRegistry())


@pytest.fixture
def serializer(registry: EventRegistry) -> JsonSerializer:
    return JsonSerializer(registry)


@pytest.fixture
def clock() -> SimClock:
    """Clock that advances one second per read."""
    return SimClock(
        datetime(2024, 1, 1, tzinfo=timezone.utc), tick=timedelta(seconds=1),
    )


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest_asyncio.fixture
async def sql_storage(tmp_path: Path):
    """SQLite file database with the schema created."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'events.db'}"
    storage = await SqlStorage.connect(url, create_tables=True)
    yield storage
    await storage.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def storage(request: pytest.FixtureRequest, tmp_path: Path):
    """Every backend, for tests that must hold on both."""
    if request.param == "memory":
        yield InMemoryStorage()
        return
    url = f"sqlite+aiosqlite:///{tmp_path / 'events.db'}"
    sql = await SqlStorage.connect(url, create_tables=True)
    yield sql
    await sql.close()


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------

def make_repository(
    storage,
    serializer: JsonSerializer,
    *,
    clock: SimClock | None = None,
    bus: InMemoryEventBus | None = None,
    policy=None,
    batch_size: int = 500,
) -> AggregateRepository[Contact]:
    events = EventEnvelopeStore(storage, LogName.DOMAIN, batch_size=batch_size)
    notifications = EventEnvelopeStore(storage, LogName.NOTIFICATION, batch_size=batch_size)
    snapshots = SnapshotManager(storage, serializer, clock)
    return AggregateRepository(
        rehydrator=AggregateRehydrator(Contact, events, snapshots, serializer),
        coordinator=CommitCoordinator(storage, serializer, bus=bus, clock=clock),
        snapshots=snapshots,
        events=events,
        notifications=notifications,
        serializer=serializer,
        policy=policy,
    )


@pytest.fixture
def repo_factory():
    """The wiring helper, for tests that need a non-default policy or bus."""
    return make_repository


@pytest.fixture
def repository(storage, serializer: JsonSerializer, clock: SimClock) -> AggregateRepository[Contact]:
    """Contact repository on each backend."""
    return make_repository(storage, serializer, clock=clock)
