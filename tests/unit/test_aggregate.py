"""Tests for the aggregate base class and the reference ``Contact`` aggregate."""

from __future__ import annotations

import pytest

from aggregate_store.core.errors import HandlerNotRegistered, InvariantViolation
from aggregate_store.domain.aggregate import Aggregate
from aggregate_store.domain.contact import (
    Contact,
    ContactCreated,
    ContactMemento,
    ContactNameChangeNotified,
    ContactRenamed,
)
from aggregate_store.domain.events import Memento


class TestRaisingEvents:
    def test_new_aggregate_is_empty(self):
        contact = Contact()
        assert contact.is_empty
        assert contact.version == 0
        assert not contact.has_uncommitted_changes

    def test_create_stamps_identity_and_version(self):
        contact = Contact.create("Ann", "Paris", "1 rue X", "FR", aggregate_id="c1")
        [event] = contact.get_uncommitted_events()
        assert isinstance(event, ContactCreated)
        assert event.aggregate_id == "c1"
        assert event.aggregate_version == 1
        assert contact.version == 1
        assert contact.name == "Ann"
        assert contact.persisted_version == 0

    def test_versions_increase_by_one(self):
        contact = Contact.create("Ann")
        contact.rename("Bea")
        contact.relocate("Rome", "Via 1", "IT")
        versions = [e.aggregate_version for e in contact.get_uncommitted_events()]
        assert versions == [1, 2, 3]

    def test_rename_adds_notification(self):
        contact = Contact.create("Ann")
        contact.rename("Bea")
        [note] = contact.get_uncommitted_notifications()
        assert isinstance(note, ContactNameChangeNotified)
        assert (note.old_name, note.new_name) == ("Ann", "Bea")
        assert note.aggregate_version == 2

    def test_rename_to_same_name_is_noop(self):
        contact = Contact.create("Ann")
        contact.rename("Ann")
        assert contact.version == 1
        assert contact.get_uncommitted_notifications() == []

    def test_cancel_rename(self):
        contact = Contact.create("Ann")
        contact.rename("Bea")
        contact.cancel_rename("Ann")
        assert contact.name == "Ann"
        assert contact.version == 3

    def test_business_rules_on_empty_contact(self):
        with pytest.raises(ValueError):
            Contact().rename("X")
        with pytest.raises(ValueError):
            Contact().relocate("a", "b", "c")
        empty = Contact()
        with pytest.raises(ValueError):
            empty.cancel_rename("X")
        assert empty.version == 0
        assert not empty.has_uncommitted_changes

    def test_mark_committed_clears_queues(self):
        contact = Contact.create("Ann")
        contact.rename("Bea")
        contact.mark_events_committed()
        contact.mark_notifications_committed()
        assert not contact.has_uncommitted_changes
        assert contact.persisted_version == 2

    def test_duplicate_notification_rejected(self):
        contact = Contact.create("Ann")
        note = ContactNameChangeNotified(event_id="n1")
        contact.add_notification(note)
        with pytest.raises(ValueError):
            contact.add_notification(note)


class TestReplay:
    def test_load_from_history_requires_contiguity(self):
        contact = Contact("c1")
        contact.load_from_history(ContactCreated(aggregate_id="c1", aggregate_version=1, name="A"))
        with pytest.raises(InvariantViolation):
            contact.load_from_history(ContactRenamed(aggregate_id="c1", aggregate_version=3))

    def test_replay_does_not_queue(self):
        contact = Contact("c1")
        contact.load_from_history(ContactCreated(aggregate_id="c1", aggregate_version=1, name="A"))
        assert contact.version == 1
        assert not contact.has_uncommitted_changes

    def test_skip_version(self):
        contact = Contact("c1")
        contact.skip_version(1)
        assert contact.version == 1
        with pytest.raises(InvariantViolation):
            contact.skip_version(3)

    def test_unhandled_event_type(self):
        class Bare(Aggregate):
            aggregate_type = "Bare"

        with pytest.raises(HandlerNotRegistered):
            Bare().raise_event(ContactCreated())

    def test_duplicate_handler_rejected(self):
        contact = Contact()
        with pytest.raises(ValueError):
            contact._register(ContactCreated, contact._on_created)


class TestMemento:
    def test_memento_round_trip(self):
        source = Contact.create("Ann", "Paris", "1 rue X", "FR", aggregate_id="c1")
        memento = source.create_memento()
        assert memento == ContactMemento(name="Ann", city="Paris", address="1 rue X", country="FR")

        target = Contact("c1")
        target.restore_memento(memento, 1)
        assert target.state() == source.state()

    def test_restore_requires_fresh_aggregate(self):
        contact = Contact.create("Ann")
        with pytest.raises(InvariantViolation):
            contact.restore_memento(ContactMemento(), 1)

    def test_wrong_memento_type(self):
        with pytest.raises(TypeError):
            Contact("c1").restore_memento(Memento(), 1)

    def test_base_aggregate_has_no_memento(self):
        with pytest.raises(NotImplementedError):
            Aggregate().create_memento()
