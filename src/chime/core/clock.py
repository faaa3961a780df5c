"""Clock sources.

Every due-time comparison and lease expiry in Chime reads time through a
``Clock`` so tests can drive the engine deterministically. All instants are
timezone-aware UTC.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of absolute UTC time."""

    def now(self) -> datetime:
        """Return the current instant (timezone-aware, UTC)."""
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FakeClock:
    """Manually advanced clock for tests.

    Example:
        >>> clock = FakeClock(datetime(2025, 1, 1, tzinfo=UTC))
        >>> clock.advance(26)
        >>> clock.now().second
        26
    """

    def __init__(self, start: datetime | None = None) -> None:
        start = start or datetime(2025, 1, 1, tzinfo=UTC)
        self._now = ensure_utc(start)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: float | timedelta) -> datetime:
        """Move the clock forward by seconds or a timedelta."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        with self._lock:
            self._now = self._now + delta
            return self._now

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(instant)


def ensure_utc(value: datetime) -> datetime:
    """Convert an aware datetime to UTC.

    Raises:
        ValueError: If ``value`` is naive (no zone, so not an absolute instant)
    """
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"naive datetime is not an absolute instant: {value.isoformat()}")
    return value.astimezone(UTC)


__all__ = ["Clock", "SystemClock", "FakeClock", "ensure_utc"]
