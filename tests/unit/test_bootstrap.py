"""Tests for settings-driven wiring and logging setup."""

from __future__ import annotations

import logging

import pytest

from aggregate_store.bootstrap import (
    build_repository,
    close_storage,
    create_bus,
    create_relay,
    create_storage,
)
from aggregate_store.core.config import MEMORY_URL, load_settings
from aggregate_store.core.errors import RegistryFrozen, StoreUnavailable
from aggregate_store.domain.contact import Contact, ContactMemento
from aggregate_store.infrastructure.event_bus import InMemoryEventBus
from aggregate_store.infrastructure.outbox import NotificationRelay
from aggregate_store.observability.logger import (
    get_correlation_id,
    get_logger,
    new_correlation_id,
    set_correlation_id,
    setup_logging,
)
from aggregate_store.storage.memory import InMemoryStorage
from aggregate_store.storage.sql.connection import SqlStorage


class TestCreateStorage:
    @pytest.mark.asyncio
    async def test_memory_url(self):
        storage = await create_storage(load_settings(overrides={"database": {"url": MEMORY_URL}}))
        assert isinstance(storage, InMemoryStorage)
        await close_storage(storage)

    @pytest.mark.asyncio
    async def test_sqlite_url(self, tmp_path):
        settings = load_settings(overrides={"database": {
            "url": f"sqlite+aiosqlite:///{tmp_path / 'boot.db'}",
            "create_tables": True,
        }})
        storage = await create_storage(settings)
        assert isinstance(storage, SqlStorage)
        await close_storage(storage)

    @pytest.mark.asyncio
    async def test_unreachable_database(self, tmp_path):
        settings = load_settings(overrides={"database": {
            "url": f"sqlite+aiosqlite:///{tmp_path / 'missing-dir' / 'x.db'}",
            "create_tables": True,
        }})
        with pytest.raises(StoreUnavailable):
            await create_storage(settings)


class TestBuildRepository:
    @pytest.mark.asyncio
    async def test_wires_snapshot_policy(self, registry):
        settings = load_settings(overrides={
            "database": {"url": MEMORY_URL},
            "snapshots": {"enabled": True, "interval": 2},
        })
        storage = await create_storage(settings)
        repository = build_repository(Contact, settings, registry, storage=storage)

        contact = Contact.create("Ann", aggregate_id="c1")
        contact.rename("Bea")
        await repository.save(contact)

        assert (await repository.snapshots.get_latest("c1")).version == 2
        assert (await repository.get("c1")).name == "Bea"

    @pytest.mark.asyncio
    async def test_registry_frozen_after_build(self, registry):
        settings = load_settings(overrides={"database": {"url": MEMORY_URL}})
        build_repository(Contact, settings, registry, storage=InMemoryStorage())
        with pytest.raises(RegistryFrozen):
            registry.register(ContactMemento, "late")

    def test_create_bus(self):
        enabled = load_settings(overrides={"bus": {"enabled": True, "queue_size": 3}})
        assert isinstance(create_bus(enabled), InMemoryEventBus)
        disabled = load_settings(overrides={"bus": {"enabled": False}})
        assert create_bus(disabled) is None

    def test_create_relay(self, registry):
        settings = load_settings(overrides={"outbox": {"batch_size": 10, "interval_seconds": 5}})
        relay = create_relay(
            settings, registry, storage=InMemoryStorage(), bus=InMemoryEventBus(),
        )
        assert isinstance(relay, NotificationRelay)
        assert registry.frozen

    def test_relay_disabled(self, registry):
        settings = load_settings(overrides={"outbox": {"enabled": False}})
        assert create_relay(
            settings, registry, storage=InMemoryStorage(), bus=InMemoryEventBus(),
        ) is None


class TestLogging:
    def test_correlation_id_context(self):
        set_correlation_id("abc")
        assert get_correlation_id() == "abc"
        fresh = new_correlation_id()
        assert fresh != "abc"
        assert get_correlation_id() == fresh

    def test_stdlib_records_rendered_as_json(self, capsys):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("INFO", "json")
            set_correlation_id("corr-1")
            logging.getLogger("aggregate_store.test").info("committed %s", "c1")
            get_logger("aggregate_store.test").info("structured", aggregate_id="c1")
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

        err = capsys.readouterr().err
        assert '"event": "committed c1"' in err
        assert '"correlation_id": "corr-1"' in err
        assert '"aggregate_id": "c1"' in err
