"""Reference aggregate: a contact card.

Exercises every engine feature: several domain events, an outbox
notification raised alongside a rename, and memento support for snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

from aggregate_store.domain.aggregate import Aggregate
from aggregate_store.domain.events import DomainEvent, Memento, NotificationEvent

if TYPE_CHECKING:
    from aggregate_store.infrastructure.serializer import EventRegistry


# =========================================================================
# Domain events
# =========================================================================

@dataclass(frozen=True)
class ContactCreated(DomainEvent):
    name: str = ""
    city: str = ""
    address: str = ""
    country: str = ""


@dataclass(frozen=True)
class ContactRenamed(DomainEvent):
    name: str = ""


@dataclass(frozen=True)
class ContactRenameCancelled(DomainEvent):
    """Restores the name held before the last rename."""

    old_name: str = ""


@dataclass(frozen=True)
class ContactRelocated(DomainEvent):
    city: str = ""
    address: str = ""
    country: str = ""


# =========================================================================
# Notifications (outbox)
# =========================================================================

@dataclass(frozen=True)
class ContactNameChangeNotified(NotificationEvent):
    """Integration event for subscribers outside this bounded context."""

    new_name: str = ""
    old_name: str = ""


# =========================================================================
# Memento
# =========================================================================

@dataclass(frozen=True)
class ContactMemento(Memento):
    name: str = ""
    city: str = ""
    address: str = ""
    country: str = ""


CONTACT_EVENTS: tuple[type, ...] = (
    ContactCreated,
    ContactRenamed,
    ContactRenameCancelled,
    ContactRelocated,
)

CONTACT_NOTIFICATIONS: tuple[type, ...] = (ContactNameChangeNotified,)


def register_contact_types(registry: EventRegistry) -> EventRegistry:
    """Register every contact event, notification and memento type."""
    for cls in (*CONTACT_EVENTS, *CONTACT_NOTIFICATIONS, ContactMemento):
        registry.register(cls)
    return registry


# =========================================================================
# Aggregate
# =========================================================================

class Contact(Aggregate):
    aggregate_type: ClassVar[str] = "Contact"

    def __init__(self, aggregate_id: str | None = None) -> None:
        self.name = ""
        self.city = ""
        self.address = ""
        self.country = ""
        super().__init__(aggregate_id)

    @classmethod
    def create(
        cls,
        name: str,
        city: str = "",
        address: str = "",
        country: str = "",
        *,
        aggregate_id: str | None = None,
    ) -> Contact:
        contact = cls(aggregate_id)
        contact.raise_event(ContactCreated(
            name=name, city=city, address=address, country=country,
        ))
        return contact

    # -- Business methods --------------------------------------------------

    def rename(self, name: str) -> None:
        if self.is_empty:
            raise ValueError("Cannot rename a contact that was never created")
        if name == self.name:
            return
        old_name = self.name
        self.raise_event(ContactRenamed(name=name))
        self.add_notification(
            ContactNameChangeNotified(new_name=name, old_name=old_name)
        )

    def cancel_rename(self, old_name: str) -> None:
        if self.is_empty:
            raise ValueError("Cannot cancel a rename on a contact that was never created")
        self.raise_event(ContactRenameCancelled(old_name=old_name))

    def relocate(self, city: str, address: str, country: str) -> None:
        if self.is_empty:
            raise ValueError("Cannot relocate a contact that was never created")
        self.raise_event(ContactRelocated(city=city, address=address, country=country))

    # -- Event handlers ----------------------------------------------------

    def _register_handlers(self) -> None:
        self._register(ContactCreated, self._on_created)
        self._register(ContactRenamed, self._on_renamed)
        self._register(ContactRenameCancelled, self._on_rename_cancelled)
        self._register(ContactRelocated, self._on_relocated)

    def _on_created(self, event: ContactCreated) -> None:
        self.name = event.name
        self.city = event.city
        self.address = event.address
        self.country = event.country

    def _on_renamed(self, event: ContactRenamed) -> None:
        self.name = event.name

    def _on_rename_cancelled(self, event: ContactRenameCancelled) -> None:
        self.name = event.old_name

    def _on_relocated(self, event: ContactRelocated) -> None:
        self.city = event.city
        self.address = event.address
        self.country = event.country

    # -- Memento -----------------------------------------------------------

    def create_memento(self) -> ContactMemento:
        return ContactMemento(
            name=self.name,
            city=self.city,
            address=self.address,
            country=self.country,
        )

    def set_memento(self, memento: Memento) -> None:
        if not isinstance(memento, ContactMemento):
            raise TypeError(f"Expected ContactMemento, got {type(memento).__name__}")
        self.name = memento.name
        self.city = memento.city
        self.address = memento.address
        self.country = memento.country

    def state(self) -> dict[str, str | int]:
        """Comparable view of the current state (tests, diagnostics)."""
        return {
            "aggregate_id": self.aggregate_id,
            "version": self.version,
            "name": self.name,
            "city": self.city,
            "address": self.address,
            "country": self.country,
        }
