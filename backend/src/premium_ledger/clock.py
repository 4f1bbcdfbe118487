"""Time sources.

Every time-sensitive component receives a ``Clock`` explicitly. Production
code uses ``SystemClock``; tests and simulated-time runs use ``FixedClock``.
All timestamps are naive UTC, matching what the database stores.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock, naive UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """Settable clock for tests and simulated time."""

    def __init__(self, current: datetime | None = None):
        self._current = current or SystemClock().now()

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current

    def advance(self, **kwargs: float) -> datetime:
        """Move the clock forward by ``timedelta(**kwargs)`` and return the new time."""
        self._current = self._current + timedelta(**kwargs)
        return self._current
