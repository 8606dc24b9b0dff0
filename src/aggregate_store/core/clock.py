"""Clock abstraction for envelope and snapshot timestamps.

WallClock: real wall-clock time (default)
SimClock: deterministic simulated time (tests)

Stores never call datetime.now() directly; they stamp ``created_on``
through the clock they were given.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class IClock(Protocol):
    """Clock interface used by all time-dependent code."""

    def now(self) -> datetime:
        """Current time as timezone-aware UTC datetime."""
        ...


class WallClock:
    """Real wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SimClock:
    """Simulated clock for deterministic tests.

    Time advances only when explicitly set, or by ``tick`` on every read
    when constructed with a non-zero step.
    """

    def __init__(
        self,
        start: datetime | None = None,
        *,
        tick: timedelta = timedelta(0),
    ) -> None:
        self._time = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._tick = tick

    def now(self) -> datetime:
        current = self._time
        self._time = self._time + self._tick
        return current

    def set_time(self, t: datetime) -> None:
        """Advance time. Must be monotonically increasing."""
        if t < self._time:
            raise ValueError(
                f"SimClock cannot go backwards: {t} < {self._time}"
            )
        self._time = t

    def advance(self, delta: timedelta) -> None:
        self.set_time(self._time + delta)
