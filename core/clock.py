"""
Core Module - Engine Clock.

============================================================
RESPONSIBILITY
============================================================
Single time source for the trading engine.

- Position grouping windows, cooldowns and monitor timeouts
  read time from an injected clock, never from datetime.now()
- MockClock makes every time-dependent rule reproducible in tests

============================================================
DESIGN PRINCIPLES
============================================================
- UTC only, always timezone-aware
- Injected into services, no module-level singleton reads on hot paths

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
    """Abstract interface for the engine clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        return self.now().timestamp()

    def elapsed_since(self, moment: datetime) -> timedelta:
        """Time elapsed since a past moment."""
        return self.now() - ensure_utc(moment)


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """Production clock backed by the system time (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Manually driven clock for deterministic tests.

    Time only moves when set_time() or advance() is called.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._time = ensure_utc(
            initial_time or datetime(2025, 1, 1, tzinfo=timezone.utc)
        )
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def set_time(self, new_time: datetime) -> None:
        """Jump to an absolute time."""
        with self._lock:
            self._time = ensure_utc(new_time)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (minutes, hours, ...)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)


# ============================================================
# UTILITIES
# ============================================================

def ensure_utc(dt: datetime) -> datetime:
    """Tag naive datetimes as UTC, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    """Current aware UTC time (for defaults outside injected services)."""
    return datetime.now(timezone.utc)


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "utcnow",
]
