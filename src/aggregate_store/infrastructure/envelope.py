"""Persisted record shapes: event envelopes and snapshots.

Both are immutable.  An envelope is written once and never deleted; the
only later change is the delivery mark on notification envelopes.  A
snapshot row is replaced in place by a newer one.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime

from aggregate_store.core.ids import new_id, utc_now


@dataclass(frozen=True)
class EventEnvelope:
    """One serialized event plus its stream metadata.

    ``position`` is the global append sequence assigned by the store; it is
    ``None`` until the envelope has been appended.  ``processed_on`` is set
    on notification envelopes once the relay has delivered them; domain
    envelopes never carry it.
    """

    aggregate_id: str
    aggregate_type: str
    aggregate_version: int
    event_type_name: str
    payload: bytes
    envelope_id: str = field(default_factory=new_id)
    created_on: datetime = field(default_factory=utc_now)
    position: int | None = None
    processed_on: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.processed_on is None

    def with_position(self, position: int) -> EventEnvelope:
        return dataclasses.replace(self, position=position)

    def processed_at(self, when: datetime) -> EventEnvelope:
        return dataclasses.replace(self, processed_on=when)

    def __repr__(self) -> str:
        return (
            f"<EventEnvelope({self.aggregate_id!r} v{self.aggregate_version} "
            f"{self.event_type_name}, position={self.position})>"
        )


@dataclass(frozen=True)
class Snapshot:
    """The single current memento of an aggregate at ``version``."""

    aggregate_id: str
    aggregate_type: str
    version: int
    memento_type_name: str
    memento_payload: bytes
    created_on: datetime = field(default_factory=utc_now)
