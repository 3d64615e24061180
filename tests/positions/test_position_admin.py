"""
Position Admin Tests.

============================================================
PURPOSE
============================================================
Tests for operator commands: manual close, purge of empty or
duplicate positions, and the monitoring view.

============================================================
"""

from decimal import Decimal

import pytest

from core.exceptions import PositionAlreadyClosed, PositionNotFound, PositionNotPurgeable, SellAlreadyPending
from core.types import JobOrigin, JobStatus, PositionStatus
from positions import RiskConfigPatch
from positions.admin import position_to_dict


# ============================================================
# CLOSE TESTS
# ============================================================

class TestClosePosition:
    """Tests for PositionAdmin.close_position()."""

    @pytest.mark.asyncio
    async def test_close_sells_remaining_quantity(self, engine, open_position):
        """Test a manual close queues and fills a SELL of the remainder."""
        position = await open_position(qty="2", price="100")

        job = await engine.admin.close_position(position.id)

        assert job.side == "SELL"
        assert job.qty == Decimal("2")
        assert job.origin == JobOrigin.MANUAL.value
        assert job.target_position_id == position.id

        executed = await engine.placement.process_next()
        assert executed.status == JobStatus.FILLED.value

        closed = await engine.store.get(position.id)
        assert closed.status == PositionStatus.CLOSED.value
        assert closed.close_reason == "MANUAL"

    @pytest.mark.asyncio
    async def test_second_close_is_rejected_while_pending(self, engine, open_position):
        position = await open_position()
        await engine.admin.close_position(position.id)

        with pytest.raises(SellAlreadyPending):
            await engine.admin.close_position(position.id)

    @pytest.mark.asyncio
    async def test_closed_position_cannot_be_closed(self, engine, open_position):
        position = await open_position()
        await engine.admin.close_position(position.id)
        await engine.placement.drain()

        with pytest.raises(PositionAlreadyClosed):
            await engine.admin.close_position(position.id)

    @pytest.mark.asyncio
    async def test_unknown_position(self, engine):
        with pytest.raises(PositionNotFound):
            await engine.admin.close_position(12345)


# ============================================================
# PURGE TESTS
# ============================================================

class TestPurge:
    """Tests for PositionAdmin.purge_empty_duplicate()."""

    @pytest.mark.asyncio
    async def test_position_with_executions_is_kept(self, engine, open_position):
        """Test a position created by a recorded fill cannot be purged."""
        position = await open_position()

        with pytest.raises(PositionNotPurgeable):
            await engine.admin.purge_empty_duplicate(position.id)

        assert (await engine.store.get(position.id)).id == position.id

    @pytest.mark.asyncio
    async def test_verified_duplicate_is_purged(self, engine):
        """Test an unlinked twin of another position can be deleted."""
        original = await engine.store.open_or_group(1, "BTCUSDT", Decimal("1"), Decimal("100"), 0)
        duplicate = await engine.store.open_or_group(1, "BTCUSDT", Decimal("1"), Decimal("100"), 0)

        await engine.admin.purge_empty_duplicate(duplicate.id)

        with pytest.raises(PositionNotFound):
            await engine.store.get(duplicate.id)
        assert (await engine.store.get(original.id)).status == PositionStatus.OPEN.value

    @pytest.mark.asyncio
    async def test_unique_position_is_kept(self, engine):
        position = await engine.store.open_or_group(1, "BTCUSDT", Decimal("1"), Decimal("100"), 0)
        await engine.store.open_or_group(1, "BTCUSDT", Decimal("2"), Decimal("100"), 0)

        with pytest.raises(PositionNotPurgeable):
            await engine.admin.purge_empty_duplicate(position.id)

    @pytest.mark.asyncio
    async def test_pending_sell_blocks_purge(self, engine):
        original = await engine.store.open_or_group(1, "BTCUSDT", Decimal("1"), Decimal("100"), 0)
        duplicate = await engine.store.open_or_group(1, "BTCUSDT", Decimal("1"), Decimal("100"), 0)
        await engine.admin.close_position(duplicate.id)

        with pytest.raises(PositionNotPurgeable):
            await engine.admin.purge_empty_duplicate(duplicate.id)

        assert original.id != duplicate.id


# ============================================================
# MONITORING VIEW TESTS
# ============================================================

class TestMonitoringView:
    """Tests for PositionAdmin.list_monitoring()."""

    @pytest.mark.asyncio
    async def test_lists_only_positions_with_exits(self, engine, open_position, price_feed):
        watched = await open_position(price="100")
        await open_position(symbol="ETHUSDT", price="2000")
        await engine.store.bulk_update_risk_config(
            [watched.id],
            RiskConfigPatch(tp_enabled=True, tp_pct=Decimal("10"), sl_enabled=True, sl_pct=Decimal("5")),
        )
        price_feed.set_price("BTCUSDT", "105")

        rows = await engine.admin.list_monitoring()

        assert len(rows) == 1
        row = rows[0]
        assert row["position"]["id"] == watched.id
        assert row["risk"]["price"] == "105"
        metrics = row["risk"]["metrics"]
        assert Decimal(metrics["tp_proximity_pct"]) == Decimal("50")
        assert Decimal(metrics["sl_proximity_pct"]) == Decimal("0")
        assert Decimal(metrics["distance_to_tp_pct"]) == Decimal("5")

    @pytest.mark.asyncio
    async def test_missing_price_still_lists_position(self, engine):
        position = await engine.store.open_or_group(1, "DOGEUSDT", Decimal("10"), Decimal("1"), 0)
        await engine.store.bulk_update_risk_config([position.id], RiskConfigPatch(tp_enabled=True, tp_pct=Decimal("3")))

        rows = await engine.admin.list_monitoring()

        assert rows[0]["risk"] is None

    @pytest.mark.asyncio
    async def test_position_to_dict_is_json_friendly(self, open_position):
        position = await open_position(qty="1.5")

        data = position_to_dict(position)

        assert data["qty_total"] == str(position.qty_total)
        assert data["qty_sold"] == str(position.qty_sold)
        assert isinstance(data["created_at"], str)
