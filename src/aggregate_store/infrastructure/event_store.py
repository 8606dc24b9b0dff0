"""Append-only envelope store for replay, audit and outbox reads.

Design invariants
-----------------
1.  The store is **append-only**: envelopes are never updated or deleted.
2.  On the domain log ``(aggregate_id, aggregate_version)`` is unique and
    versions of one aggregate are contiguous from 1.
3.  ``read_stream()`` and ``read()`` yield envelopes **lazily**, one
    keyset page per storage session, so a long history is never held in
    memory at once.  Abandoning the iterator mid-way is safe.
4.  Reads are read-committed: each page sees what was committed when the
    page was fetched.

One ``EventEnvelopeStore`` is bound to one log (domain or notification).
Callers that need several writes in one transaction go through the
storage session directly; see :class:`CommitCoordinator`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence

from aggregate_store.infrastructure.criteria import Cursor, EnvelopeCriteria
from aggregate_store.infrastructure.envelope import EventEnvelope
from aggregate_store.storage.base import IStorage, LogName

logger = logging.getLogger(__name__)


class EventEnvelopeStore:
    """Reads and appends envelopes of one log through an :class:`IStorage`.

    Parameters
    ----------
    storage
        Backend providing transactional sessions.
    log
        Which envelope table this store is bound to.
    batch_size
        Rows fetched per page by the lazy readers.
    """

    def __init__(
        self,
        storage: IStorage,
        log: LogName = LogName.DOMAIN,
        *,
        batch_size: int = 500,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._storage = storage
        self._log = log
        self._batch_size = batch_size

    @property
    def log(self) -> LogName:
        return self._log

    # -- Writes ------------------------------------------------------------

    async def append(
        self,
        envelope: EventEnvelope,
        *,
        expected_version: int | None = None,
    ) -> EventEnvelope:
        """Append one envelope in its own transaction.

        Raises:
            ConcurrencyConflict: The version is taken or the stream is not
                at *expected_version*.
            StoreUnavailable: Transient backend failure; nothing was written.
        """
        stored = await self.append_batch([envelope], expected_version=expected_version)
        return stored[0]

    async def append_batch(
        self,
        envelopes: Sequence[EventEnvelope],
        *,
        expected_version: int | None = None,
    ) -> list[EventEnvelope]:
        """Append *envelopes* all-or-nothing, in order.

        Returns:
            The envelopes with their assigned ``position``.
        """
        if not envelopes:
            return []
        async with self._storage.session() as session:
            stored = await session.log(self._log).append(
                envelopes, expected_version=expected_version,
            )
        logger.debug("Appended %d envelope(s) to %s", len(stored), self._log.value)
        return stored

    # -- Reads -------------------------------------------------------------

    async def current_version(self, aggregate_id: str) -> int:
        async with self._storage.session() as session:
            return await session.log(self._log).current_version(aggregate_id)

    def read_stream(
        self,
        aggregate_id: str,
        from_version: int | None = None,
        limit: int | None = None,
    ) -> AsyncIterator[EventEnvelope]:
        """Envelopes of one aggregate with version > *from_version*, ascending.

        An empty or unknown stream yields nothing.  ``limit`` truncates the
        sequence.
        """
        criteria = EnvelopeCriteria.for_aggregate(aggregate_id)
        if from_version is not None:
            criteria = criteria.since_version(from_version)
        if limit is not None:
            criteria = criteria.limit(limit)
        return self.read(criteria)

    async def read(self, criteria: EnvelopeCriteria) -> AsyncIterator[EventEnvelope]:
        """Yield envelopes matching *criteria* in criteria order."""
        remaining = criteria.max_count
        if remaining == 0:
            return

        cursor: Cursor | None = None
        while True:
            async with self._storage.session() as session:
                page = await session.log(self._log).fetch_page(
                    criteria, cursor=cursor, limit=self._batch_size,
                )
            for envelope in page:
                if not criteria.matches_payload(envelope):
                    continue
                yield envelope
                if remaining is not None:
                    remaining -= 1
                    if remaining == 0:
                        return
            if len(page) < self._batch_size:
                return
            cursor = criteria.sort_key(page[-1])

    async def read_all(self, criteria: EnvelopeCriteria) -> list[EventEnvelope]:
        """Materialised :meth:`read`."""
        return [envelope async for envelope in self.read(criteria)]

    async def count(self, criteria: EnvelopeCriteria | None = None) -> int:
        """Number of envelopes matching *criteria*.

        Structural filters are counted by the backend; a payload predicate
        forces a scan.  ``max_count`` caps the result.
        """
        criteria = criteria or EnvelopeCriteria()
        if criteria.payload_predicate is not None:
            return sum([1 async for _ in self.read(criteria)])
        async with self._storage.session() as session:
            total = await session.log(self._log).count(criteria)
        if criteria.max_count is not None:
            total = min(total, criteria.max_count)
        return total
