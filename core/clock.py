"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Provides the injectable time source used by every component
that stamps, expires or windows anything.

- Connection expiry and allowed-hours checks
- Transfer approval deadlines and durations
- Rate-limiter windows and session orphan cleanup

All times are timezone-aware UTC.

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import threading


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the time source."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        return self.now().timestamp()

    def hours_from_now(self, hours: float) -> datetime:
        """Instant ``hours`` after now."""
        return self.now() + timedelta(hours=hours)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================
# SYSTEM CLOCK
# ============================================================

class SystemClock(ClockProtocol):
    """Production clock using actual system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Allows time manipulation for deterministic expiry tests.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._time = ensure_utc(initial_time) or datetime.now(timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        with self._lock:
            self._time = ensure_utc(new_time)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)


# ============================================================
# GLOBAL CLOCK
# ============================================================

_clock: ClockProtocol = SystemClock()


def get_clock() -> ClockProtocol:
    """Get the process-wide default clock."""
    return _clock


def set_clock(clock: ClockProtocol) -> None:
    """Replace the process-wide default clock."""
    global _clock
    _clock = clock
