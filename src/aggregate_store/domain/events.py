"""Base domain primitives shared by every aggregate.

Design invariants
-----------------
1.  Every event and memento is **immutable** (``frozen=True``).
2.  ``event_id`` is a UUID4 generated at creation time.
3.  ``aggregate_id`` / ``aggregate_version`` are stamped by the owning
    aggregate when the event is raised, never by business code.
4.  Concrete subclasses give every field a default so a stored payload
    missing a newer field still decodes (forward/backward compatible).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from aggregate_store.core.ids import new_id as _uuid
from aggregate_store.core.ids import utc_now as _now


@dataclass(frozen=True)
class DomainEvent:
    """Immutable base for every domain event.

    Shared fields
    ~~~~~~~~~~~~~
    event_id            Unique identity (UUID4).
    aggregate_id        Stream the event belongs to.
    aggregate_version   Position of the event in its stream (1-based).
    occurred_on         UTC creation time.
    """

    event_id: str = field(default_factory=_uuid)
    aggregate_id: str = ""
    aggregate_version: int = 0
    occurred_on: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class NotificationEvent:
    """Immutable base for integration events written to the outbox.

    ``aggregate_version`` records the aggregate version the notification
    accompanies; several notifications may share one version.
    """

    event_id: str = field(default_factory=_uuid)
    aggregate_id: str = ""
    aggregate_version: int = 0
    occurred_on: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class Memento:
    """Immutable captured aggregate state.  Subclasses add the fields."""
