"""
Core Primitive Tests.

============================================================
PURPOSE
============================================================
Unit tests for the building blocks every subsystem shares.

TEST CATEGORIES:
- Clock tests: MockClock and UTC normalization
- Lock tests: keyed async locks
- Event tests: topic routing and callback isolation
- Exception tests: codes and serialization

============================================================
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.clock import MockClock, ensure_utc
from core.events import ORDER_FILLED, POSITION_UPDATED, WILDCARD, EventBus
from core.exceptions import (
    InsufficientQuantity,
    InvalidRiskConfig,
    PositionNotFound,
    SellAlreadyPending,
)
from core.locks import KeyedLock
from core.types import JobStatus, Side


# ============================================================
# CLOCK TESTS
# ============================================================

class TestMockClock:
    """Tests for MockClock."""

    def test_time_only_moves_when_advanced(self):
        """Test that the clock is frozen until advanced."""
        clock = MockClock(datetime(2025, 3, 1, tzinfo=timezone.utc))
        first = clock.now()

        assert clock.now() == first

        clock.advance(seconds=30)
        assert clock.now() - first == timedelta(seconds=30)

        clock.advance(minutes=2)
        assert clock.now() - first == timedelta(seconds=150)

    def test_naive_initial_time_is_utc(self):
        """Test naive datetimes are tagged as UTC."""
        clock = MockClock(datetime(2025, 3, 1, 8, 0))

        assert clock.now().tzinfo == timezone.utc
        assert clock.now().hour == 8

    def test_ensure_utc_converts_offsets(self):
        """Test aware datetimes are converted to UTC."""
        plus_two = timezone(timedelta(hours=2))
        moment = datetime(2025, 3, 1, 10, 0, tzinfo=plus_two)

        assert ensure_utc(moment) == datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


# ============================================================
# LOCK TESTS
# ============================================================

class TestKeyedLock:
    """Tests for KeyedLock."""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        """Test holders of one key run one at a time."""
        locks = KeyedLock()
        order = []

        async def worker(name: str):
            async with locks.hold("position-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        """Test distinct keys can be held together."""
        locks = KeyedLock()

        async with locks.hold("a"):
            async with locks.hold("b"):
                assert locks.is_locked("a")
                assert locks.is_locked("b")

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        """Test the lock table does not grow after release."""
        locks = KeyedLock()

        async with locks.hold(("position", 7)):
            assert len(locks) == 1

        assert len(locks) == 0
        assert not locks.is_locked(("position", 7))


# ============================================================
# EVENT TESTS
# ============================================================

class TestEventBus:
    """Tests for EventBus."""

    @pytest.mark.asyncio
    async def test_topic_and_wildcard_subscribers(self):
        """Test events reach topic and wildcard subscribers only."""
        bus = EventBus()
        filled, everything = [], []
        bus.subscribe(ORDER_FILLED, filled.append)
        bus.subscribe(WILDCARD, everything.append)

        await bus.publish(ORDER_FILLED, execution_id=1)
        await bus.publish(POSITION_UPDATED, position_id=2)

        assert [e.payload for e in filled] == [{"execution_id": 1}]
        assert [e.topic for e in everything] == [ORDER_FILLED, POSITION_UPDATED]
        assert bus.published_count == 2

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self):
        """Test coroutine callbacks run to completion."""
        bus = EventBus()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event.payload["position_id"])

        bus.subscribe(POSITION_UPDATED, handler)
        await bus.publish(POSITION_UPDATED, position_id=3)

        assert seen == [3]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_delivery(self):
        """Test one broken subscriber does not starve the others."""
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(ORDER_FILLED, broken)
        bus.subscribe(ORDER_FILLED, seen.append)

        await bus.publish(ORDER_FILLED, execution_id=9)

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        """Test unsubscribed callbacks stop receiving events."""
        bus = EventBus()
        seen = []
        bus.subscribe(ORDER_FILLED, seen.append)
        bus.unsubscribe(ORDER_FILLED, seen.append)

        await bus.publish(ORDER_FILLED)

        assert seen == []


# ============================================================
# EXCEPTION TESTS
# ============================================================

class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_codes_are_upper_snake_case(self):
        """Test machine-readable codes derive from the class name."""
        assert PositionNotFound(1).code == "POSITION_NOT_FOUND"
        assert SellAlreadyPending(1).code == "SELL_ALREADY_PENDING"
        assert InvalidRiskConfig("bad").code == "INVALID_RISK_CONFIG"

    def test_to_dict_serializes_decimals(self):
        """Test context values survive JSON serialization."""
        error = InsufficientQuantity(4, Decimal("2"), Decimal("1.5"))
        data = error.to_dict()

        assert data["type"] == "InsufficientQuantity"
        assert all(not isinstance(v, Decimal) for v in data["context"].values())


class TestTypes:
    """Tests for shared enums."""

    def test_side_opposite(self):
        assert Side.BUY.opposite is Side.SELL
        assert Side.SELL.opposite is Side.BUY

    def test_job_status_classification(self):
        assert JobStatus.FILLED.is_terminal()
        assert JobStatus.CANCELLED.is_terminal()
        assert not JobStatus.PARTIALLY_FILLED.is_terminal()
        assert JobStatus.PENDING.is_in_flight()
        assert not JobStatus.FAILED.is_in_flight()
