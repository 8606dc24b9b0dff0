"""Event-sourced aggregate persistence.

Key components
--------------
Aggregate              Base class for event-sourced aggregates
EventRegistry          Closed tag -> type table for the JSON codec
EventEnvelopeStore     Append-only domain / notification log access
SnapshotManager        Single current memento per aggregate
AggregateRehydrator    Full replay or snapshot + delta replay
CommitCoordinator      Atomic append of events and notifications
AggregateRepository    Application-facing load / save facade
NotificationRelay      Delivers pending outbox rows to the event bus
"""

from .core.config import Settings, load_settings
from .core.errors import (
    AggregateNotFound,
    AggregateStoreError,
    ConcurrencyConflict,
    InvariantViolation,
    SerializationError,
    StoreUnavailable,
    UnknownEventType,
)
from .domain.aggregate import Aggregate
from .domain.events import DomainEvent, Memento, NotificationEvent
from .infrastructure.commit import CommitCoordinator, CommitResult, CommitState
from .infrastructure.criteria import EnvelopeCriteria
from .infrastructure.envelope import EventEnvelope, Snapshot
from .infrastructure.event_bus import InMemoryEventBus
from .infrastructure.event_store import EventEnvelopeStore
from .infrastructure.outbox import NotificationRelay, RelayResult
from .infrastructure.rehydrator import AggregateRehydrator
from .infrastructure.repository import AggregateRepository
from .infrastructure.serializer import EventRegistry, JsonSerializer
from .infrastructure.snapshot_store import (
    EveryNEventsPolicy,
    NeverSnapshotPolicy,
    SnapshotManager,
)

__all__ = [
    "Aggregate",
    "AggregateNotFound",
    "AggregateRehydrator",
    "AggregateRepository",
    "AggregateStoreError",
    "CommitCoordinator",
    "CommitResult",
    "CommitState",
    "ConcurrencyConflict",
    "DomainEvent",
    "EnvelopeCriteria",
    "EventEnvelope",
    "EventEnvelopeStore",
    "EventRegistry",
    "EveryNEventsPolicy",
    "InMemoryEventBus",
    "InvariantViolation",
    "JsonSerializer",
    "Memento",
    "NeverSnapshotPolicy",
    "NotificationEvent",
    "NotificationRelay",
    "RelayResult",
    "SerializationError",
    "Settings",
    "Snapshot",
    "SnapshotManager",
    "StoreUnavailable",
    "UnknownEventType",
    "load_settings",
]
