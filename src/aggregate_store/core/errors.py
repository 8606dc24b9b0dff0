"""Custom exception hierarchy for the aggregate store."""

from __future__ import annotations


class AggregateStoreError(Exception):
    """Base exception for all aggregate store errors."""


# --- Configuration ---
class ConfigError(AggregateStoreError):
    """Invalid or missing configuration."""


# --- Lookup ---
class AggregateNotFound(AggregateStoreError):
    """No events and no snapshot exist for the requested aggregate id."""

    def __init__(self, aggregate_id: str):
        self.aggregate_id = aggregate_id
        super().__init__(f"Aggregate {aggregate_id!r} not found")


# --- Concurrency ---
class ConcurrencyConflict(AggregateStoreError):
    """Another writer already appended at the expected version.

    The caller must re-load the aggregate and retry the whole operation.
    """

    def __init__(
        self,
        aggregate_id: str,
        expected_version: int | None,
        actual_version: int | None,
    ):
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrency conflict on {aggregate_id!r}: expected version "
            f"{expected_version}, store is at {actual_version}"
        )


# --- Serialization ---
class SerializationError(AggregateStoreError):
    """A payload could not be encoded or decoded."""


class UnknownEventType(SerializationError):
    """A stored type tag has no entry in the registry."""

    def __init__(self, type_name: str):
        self.type_name = type_name
        super().__init__(f"No registered type for tag {type_name!r}")


class RegistryFrozen(AggregateStoreError):
    """The type registry was closed and can no longer be modified."""


# --- Storage ---
class StoreUnavailable(AggregateStoreError):
    """Transient backend failure.  Nothing was committed; safe to retry."""


# --- Integrity ---
class InvariantViolation(AggregateStoreError):
    """An internal consistency check failed (log corruption or misuse)."""


class HandlerNotRegistered(AggregateStoreError):
    """An aggregate received an event type it has no handler for."""

    def __init__(self, aggregate_type: str, event_type: str):
        self.aggregate_type = aggregate_type
        self.event_type = event_type
        super().__init__(
            f"{aggregate_type} has no handler registered for {event_type}"
        )
