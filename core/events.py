"""
Core Module - Engine Event Bus.

============================================================
RESPONSIBILITY
============================================================
In-process publish/subscribe for ledger state changes.

Dashboards and caches subscribe to invalidate on:
- position.updated
- position.closed
- order.filled
- order.cancelled

Subscriber errors are logged and never propagate into the
mutation that published the event.

============================================================
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)


# ============================================================
# EVENT TOPICS
# ============================================================

POSITION_UPDATED = "position.updated"
POSITION_CLOSED = "position.closed"
ORDER_FILLED = "order.filled"
ORDER_CANCELLED = "order.cancelled"

WILDCARD = "*"


@dataclass
class EngineEvent:
    """A published state change."""

    topic: str
    """Event topic (see module constants)."""

    payload: Dict[str, Any] = field(default_factory=dict)
    """Serializable event data."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    """When the event was published."""


# ============================================================
# EVENT BUS
# ============================================================

class EventBus:
    """
    Topic-routed event bus.

    Handlers may be plain callables or coroutine functions.
    Subscribing to "*" receives every topic.
    """

    def __init__(self):
        self._callbacks: Dict[str, List[Callable]] = {}
        self._published = 0

    def subscribe(self, topic: str, callback: Callable) -> None:
        """Register a callback for a topic."""
        self._callbacks.setdefault(topic, []).append(callback)

    def unsubscribe(self, topic: str, callback: Callable) -> None:
        """Remove a callback; unknown callbacks are ignored."""
        callbacks = self._callbacks.get(topic, [])
        if callback in callbacks:
            callbacks.remove(callback)

    @property
    def published_count(self) -> int:
        return self._published

    async def publish(self, topic: str, **payload: Any) -> EngineEvent:
        """
        Publish an event to topic and wildcard subscribers.

        Returns:
            The published event
        """
        event = EngineEvent(topic=topic, payload=payload)
        self._published += 1

        for callback in self._callbacks.get(topic, []) + self._callbacks.get(WILDCARD, []):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event callback error for {topic}: {e}")

        logger.debug(f"Published {topic}: {payload}")
        return event


__all__ = [
    "POSITION_UPDATED",
    "POSITION_CLOSED",
    "ORDER_FILLED",
    "ORDER_CANCELLED",
    "WILDCARD",
    "EngineEvent",
    "EventBus",
]
