"""Clock abstraction for time-dependent workflows.

WallClock: real wall-clock time (services, scheduler)
FixedClock: deterministic time for tests and replays

Workflows that compare against "now" (scheduling lead time, PDF request
debounce, due-job polling) take an ``IClock`` instead of calling
datetime.now() directly.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class IClock(Protocol):
    """Clock interface used by all time-dependent code."""

    def now(self) -> datetime:
        """Current time as timezone-aware UTC datetime."""
        ...

    def now_seconds(self) -> int:
        """Current time as whole seconds since epoch."""
        ...


class WallClock:
    """Real wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_seconds(self) -> int:
        return int(self.now().timestamp())


class FixedClock:
    """Settable clock for deterministic tests.

    Time only moves when ``set_time`` or ``advance`` is called.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._time = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._time

    def now_seconds(self) -> int:
        return int(self._time.timestamp())

    def set_time(self, t: datetime) -> None:
        """Move the clock. Must be monotonically increasing."""
        if t < self._time:
            raise ValueError(
                f"FixedClock cannot go backwards: {t} < {self._time}"
            )
        self._time = t

    def advance(self, seconds: float) -> None:
        """Advance time by *seconds*."""
        self.set_time(self._time + timedelta(seconds=seconds))
