"""Build a ready-to-use repository from :class:`Settings`.

Typical startup::

    settings = load_settings("config/events.toml")
    setup_logging(settings.observability.log_level,
                  settings.observability.log_format)

    registry = EventRegistry()
    register_contact_types(registry)

    storage = await create_storage(settings)
    contacts = build_repository(Contact, settings, registry, storage=storage)

    bus = create_bus(settings)
    relay = create_relay(settings, registry, storage=storage, bus=bus)
    await bus.start(); await relay.start()
    ...
    await relay.stop(); await bus.stop()
    await close_storage(storage)
"""

from __future__ import annotations

import logging
from typing import TypeVar

from aggregate_store.core.clock import IClock
from aggregate_store.core.config import Settings
from aggregate_store.domain.aggregate import Aggregate
from aggregate_store.infrastructure.commit import CommitCoordinator
from aggregate_store.infrastructure.event_bus import IEventBus, InMemoryEventBus
from aggregate_store.infrastructure.event_store import EventEnvelopeStore
from aggregate_store.infrastructure.outbox import NotificationRelay
from aggregate_store.infrastructure.rehydrator import AggregateRehydrator
from aggregate_store.infrastructure.repository import AggregateRepository
from aggregate_store.infrastructure.serializer import EventRegistry, JsonSerializer
from aggregate_store.infrastructure.snapshot_store import (
    EveryNEventsPolicy,
    NeverSnapshotPolicy,
    SnapshotManager,
    SnapshotPolicy,
)
from aggregate_store.storage.base import IStorage, LogName
from aggregate_store.storage.memory import InMemoryStorage
from aggregate_store.storage.sql.connection import SqlStorage

logger = logging.getLogger(__name__)

A = TypeVar("A", bound=Aggregate)


async def create_storage(settings: Settings) -> IStorage:
    """Create the backend named by ``settings.database.url``."""
    db = settings.database
    if db.is_memory:
        logger.info("Using in-memory storage")
        return InMemoryStorage()
    return await SqlStorage.connect(
        db.url,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        echo=db.echo,
        create_tables=db.create_tables,
    )


def create_bus(settings: Settings) -> InMemoryEventBus | None:
    """In-process bus sized from settings, or ``None`` when disabled."""
    if not settings.bus.enabled:
        return None
    return InMemoryEventBus(queue_size=settings.bus.queue_size)


def build_repository(
    aggregate_cls: type[A],
    settings: Settings,
    registry: EventRegistry,
    *,
    storage: IStorage,
    bus: IEventBus | None = None,
    clock: IClock | None = None,
) -> AggregateRepository[A]:
    """Wire serializer, stores, rehydrator and coordinator for *aggregate_cls*.

    The registry is frozen here; register every event, notification and
    memento type before calling.
    """
    registry.freeze()
    serializer = JsonSerializer(registry)

    events = EventEnvelopeStore(storage, LogName.DOMAIN, batch_size=settings.read_batch_size)
    notifications = EventEnvelopeStore(
        storage, LogName.NOTIFICATION, batch_size=settings.read_batch_size,
    )
    snapshots = SnapshotManager(storage, serializer, clock)

    policy: SnapshotPolicy
    if settings.snapshots.enabled:
        policy = EveryNEventsPolicy(settings.snapshots.interval)
    else:
        policy = NeverSnapshotPolicy()

    return AggregateRepository(
        rehydrator=AggregateRehydrator(aggregate_cls, events, snapshots, serializer),
        coordinator=CommitCoordinator(
            storage, serializer,
            bus=bus if settings.bus.enabled else None,
            clock=clock,
        ),
        snapshots=snapshots,
        events=events,
        notifications=notifications,
        serializer=serializer,
        policy=policy,
    )


def create_relay(
    settings: Settings,
    registry: EventRegistry,
    *,
    storage: IStorage,
    bus: IEventBus,
    clock: IClock | None = None,
) -> NotificationRelay | None:
    """Outbox relay from settings, or ``None`` when disabled.

    Freezes *registry* like :func:`build_repository`.
    """
    if not settings.outbox.enabled:
        return None
    registry.freeze()
    return NotificationRelay(
        storage,
        JsonSerializer(registry),
        bus,
        batch_size=settings.outbox.batch_size,
        interval=settings.outbox.interval_seconds,
        clock=clock,
    )


async def close_storage(storage: IStorage) -> None:
    await storage.close()
    logger.info("Storage closed")
