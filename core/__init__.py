"""
Core Module Package.

Infrastructure shared by every engine subsystem:
- clock: injectable time source
- exceptions: error taxonomy
- events: in-process event bus
- locks: keyed async locks
"""

from .clock import ClockProtocol, SystemClock, MockClock, ensure_utc, utcnow
from .events import EventBus, EngineEvent
from .locks import KeyedLock

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "utcnow",
    "EventBus",
    "EngineEvent",
    "KeyedLock",
]
