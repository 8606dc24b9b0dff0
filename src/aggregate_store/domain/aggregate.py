"""Event-sourced aggregate base class.

An aggregate is a consistency boundary whose state is derived entirely from
its event history.  Subclasses register one handler per event type and
raise events from their business methods; the base class stamps identity
and version, keeps the uncommitted queues and drives replay.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from typing import Any, ClassVar, TypeVar

from aggregate_store.core.errors import (
    HandlerNotRegistered,
    InvariantViolation,
)
from aggregate_store.core.ids import new_id
from aggregate_store.domain.events import DomainEvent, Memento, NotificationEvent

E = TypeVar("E", bound=DomainEvent)


class Aggregate:
    """Base class for event-sourced aggregates.

    Subclasses set ``aggregate_type`` and override ``_register_handlers``.
    Aggregates that support snapshots also override ``create_memento`` and
    ``set_memento``.
    """

    aggregate_type: ClassVar[str] = "Aggregate"

    def __init__(self, aggregate_id: str | None = None) -> None:
        self._id = aggregate_id or new_id()
        self._version = 0
        self._uncommitted_events: list[DomainEvent] = []
        self._uncommitted_notifications: list[NotificationEvent] = []
        self._handlers: dict[type[DomainEvent], Callable[[Any], None]] = {}
        self._register_handlers()

    # -- Identity ----------------------------------------------------------

    @property
    def aggregate_id(self) -> str:
        return self._id

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_empty(self) -> bool:
        """True when nothing was ever applied to or restored into this aggregate."""
        return self._version == 0

    @property
    def persisted_version(self) -> int:
        """Version of the stream before the uncommitted events."""
        return self._version - len(self._uncommitted_events)

    # -- Handler registration ---------------------------------------------

    def _register_handlers(self) -> None:
        """Register event handlers.  Override in subclasses."""

    def _register(
        self,
        event_type: type[E],
        handler: Callable[[E], None],
    ) -> None:
        if event_type in self._handlers:
            raise ValueError(
                f"{type(self).__name__} already has a handler for "
                f"{event_type.__name__}"
            )
        self._handlers[event_type] = handler

    def handles(self, event_type: type[DomainEvent]) -> bool:
        return event_type in self._handlers

    def _mutate(self, event: DomainEvent) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise HandlerNotRegistered(
                self.aggregate_type, type(event).__name__,
            )
        handler(event)

    # -- Business-side API -------------------------------------------------

    def raise_event(self, event: DomainEvent) -> DomainEvent:
        """Stamp *event* with this aggregate's id and next version, apply it,
        and queue it for commit.

        Returns the stamped event.
        """
        stamped = dataclasses.replace(
            event,
            aggregate_id=self._id,
            aggregate_version=self._version + 1,
        )
        self._mutate(stamped)
        self._version = stamped.aggregate_version
        self._uncommitted_events.append(stamped)
        return stamped

    def add_notification(self, notification: NotificationEvent) -> NotificationEvent:
        """Queue an outbox notification alongside the current version."""
        if any(
            n.event_id == notification.event_id
            for n in self._uncommitted_notifications
        ):
            raise ValueError(
                f"Notification {notification.event_id} is already queued"
            )
        stamped = dataclasses.replace(
            notification,
            aggregate_id=self._id,
            aggregate_version=self._version,
        )
        self._uncommitted_notifications.append(stamped)
        return stamped

    # -- Commit-side API ---------------------------------------------------

    def get_uncommitted_events(self) -> list[DomainEvent]:
        return list(self._uncommitted_events)

    def get_uncommitted_notifications(self) -> list[NotificationEvent]:
        return list(self._uncommitted_notifications)

    @property
    def has_uncommitted_changes(self) -> bool:
        return bool(self._uncommitted_events or self._uncommitted_notifications)

    def mark_events_committed(self) -> None:
        self._uncommitted_events.clear()

    def mark_notifications_committed(self) -> None:
        self._uncommitted_notifications.clear()

    # -- Replay-side API ---------------------------------------------------

    def load_from_history(self, event: DomainEvent) -> None:
        """Apply one historical event.  Versions must arrive contiguous."""
        if event.aggregate_version != self._version + 1:
            raise InvariantViolation(
                f"{self.aggregate_type} {self._id}: expected version "
                f"{self._version + 1}, got {event.aggregate_version}"
            )
        self._mutate(event)
        self._version = event.aggregate_version

    def skip_version(self, version: int) -> None:
        """Advance past a stored position whose event could not be decoded."""
        if version != self._version + 1:
            raise InvariantViolation(
                f"{self.aggregate_type} {self._id}: cannot skip to version "
                f"{version} from {self._version}"
            )
        self._version = version

    # -- Memento (snapshot) support ---------------------------------------

    def create_memento(self) -> Memento:
        raise NotImplementedError(
            f"{type(self).__name__} does not support snapshots"
        )

    def set_memento(self, memento: Memento) -> None:
        raise NotImplementedError(
            f"{type(self).__name__} does not support snapshots"
        )

    def restore_memento(self, memento: Memento, version: int) -> None:
        """Fast-forward a fresh aggregate to *version* from *memento*."""
        if not self.is_empty or self.has_uncommitted_changes:
            raise InvariantViolation(
                "A memento can only be restored into a fresh aggregate"
            )
        self.set_memento(memento)
        self._version = version

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(aggregate_id={self._id!r}, "
            f"version={self._version})>"
        )
