"""Declarative envelope selection: predicate + ordering + row limit.

``EnvelopeCriteria`` is pure data.  The same shape is handed to the
in-memory and SQL backends, which push the structural fields (aggregate,
type tags, version and time ranges) into their query and evaluate
``payload_predicate`` in Python over the decoded payload.

Version filtering always uses the typed ``aggregate_version`` envelope
field; the payload is only inspected by ``payload_predicate``.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from aggregate_store.core.errors import SerializationError
from aggregate_store.infrastructure.envelope import EventEnvelope

PayloadPredicate = Callable[[dict[str, Any]], bool]

# Sort key of the last row of a page: (version, position) or (position, version).
Cursor = tuple[int, int]


def _both(first: PayloadPredicate, second: PayloadPredicate) -> PayloadPredicate:
    def combined(payload: dict[str, Any]) -> bool:
        return first(payload) and second(payload)

    return combined


@dataclass(frozen=True)
class EnvelopeCriteria:
    """Selects envelopes from one log.

    Ordering is ascending by ``(aggregate_version, position)`` when
    ``aggregate_id`` is set, otherwise by global ``position``;
    ``descending`` flips it.  Paging resumes strictly after the
    :meth:`sort_key` of the last row seen.

    ``pending_only`` keeps notification envelopes the relay has not yet
    delivered.  Domain envelopes are never marked, so it matches them all.
    ``max_count`` applies after every filter, including the payload one.
    """

    aggregate_id: str | None = None
    aggregate_type: str | None = None
    event_types: tuple[str, ...] = ()
    after_version: int | None = None
    up_to_version: int | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    payload_predicate: PayloadPredicate | None = None
    max_count: int | None = None
    descending: bool = False
    pending_only: bool = False

    def __post_init__(self) -> None:
        if self.max_count is not None and self.max_count < 0:
            raise ValueError("max_count must be >= 0")

    # -- Builders ----------------------------------------------------------

    @classmethod
    def for_aggregate(cls, aggregate_id: str) -> EnvelopeCriteria:
        return cls(aggregate_id=aggregate_id)

    def since_version(self, version: int) -> EnvelopeCriteria:
        """Only envelopes with ``aggregate_version > version``."""
        return dataclasses.replace(self, after_version=version)

    def of_types(self, *type_names: str) -> EnvelopeCriteria:
        return dataclasses.replace(self, event_types=tuple(type_names))

    def where_payload(self, predicate: PayloadPredicate) -> EnvelopeCriteria:
        """AND *predicate* onto any existing payload predicate."""
        if self.payload_predicate is not None:
            predicate = _both(self.payload_predicate, predicate)
        return dataclasses.replace(self, payload_predicate=predicate)

    def limit(self, count: int) -> EnvelopeCriteria:
        return dataclasses.replace(self, max_count=count)

    def pending(self) -> EnvelopeCriteria:
        return dataclasses.replace(self, pending_only=True)

    # -- Evaluation --------------------------------------------------------

    @property
    def orders_by_version(self) -> bool:
        return self.aggregate_id is not None

    def matches_structure(self, envelope: EventEnvelope) -> bool:
        """Every filter except the payload predicate."""
        if self.aggregate_id is not None and envelope.aggregate_id != self.aggregate_id:
            return False
        if self.aggregate_type is not None and envelope.aggregate_type != self.aggregate_type:
            return False
        if self.event_types and envelope.event_type_name not in self.event_types:
            return False
        if self.after_version is not None and envelope.aggregate_version <= self.after_version:
            return False
        if self.up_to_version is not None and envelope.aggregate_version > self.up_to_version:
            return False
        if self.created_from is not None and envelope.created_on < self.created_from:
            return False
        if self.created_to is not None and envelope.created_on > self.created_to:
            return False
        if self.pending_only and not envelope.is_pending:
            return False
        return True

    def matches_payload(self, envelope: EventEnvelope) -> bool:
        if self.payload_predicate is None:
            return True
        try:
            payload = json.loads(envelope.payload)
        except ValueError as exc:
            raise SerializationError(
                f"Envelope {envelope.envelope_id} has a malformed payload: {exc}"
            ) from exc
        return bool(self.payload_predicate(payload))

    def matches(self, envelope: EventEnvelope) -> bool:
        return self.matches_structure(envelope) and self.matches_payload(envelope)

    def sort_key(self, envelope: EventEnvelope) -> Cursor:
        if self.orders_by_version:
            return (envelope.aggregate_version, envelope.position or 0)
        return (envelope.position or 0, envelope.aggregate_version)

    def is_past(self, envelope: EventEnvelope, cursor: Cursor) -> bool:
        """Whether *envelope* comes strictly after *cursor* in criteria order."""
        key = self.sort_key(envelope)
        return key < cursor if self.descending else key > cursor
