"""
Risk Exit Monitor Tests.

============================================================
PURPOSE
============================================================
Tests for the scheduled tick over open positions.

TEST CATEGORIES:
- Trigger tests: SELL hand-off and position close
- Guard tests: pending SELL, residue, closed positions
- Re-arm tests: failed hand-off or failed exit job fires again
- State tests: peak persisted between ticks
- Isolation tests: missing prices

============================================================
"""

from decimal import Decimal

import pytest

from core.exceptions import OrderRejected
from core.types import ExitReason, JobOrigin, JobStatus, PositionStatus, Side
from execution_engine.repository import ExecutionRepository
from execution_engine.types import TradeIntent
from positions import RiskConfigPatch
from risk_exit import CheckOutcome


STOP_LOSS = RiskConfigPatch(sl_enabled=True, sl_pct=Decimal("5"))
TRAILING = RiskConfigPatch(tsg_enabled=True, tsg_activation_pct=Decimal("2"), tsg_drop_pct=Decimal("1"))


# ============================================================
# TRIGGER TESTS
# ============================================================

class TestTriggers:
    """Tests for rule hand-off to order placement."""

    @pytest.mark.asyncio
    async def test_stop_loss_sells_whole_position(self, engine, open_position, price_feed):
        position = await open_position(qty="2", price="100")
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)
        price_feed.set_price("BTCUSDT", "94")

        report = await engine.risk_monitor.tick()

        assert report.checked == 1
        assert report.triggered == 1
        trigger = report.triggers[0]
        assert trigger["reason"] == "SL"
        assert Decimal(trigger["trigger_price"]) == Decimal("95")

        async with engine.db.session_scope() as session:
            job = await ExecutionRepository(session).get_job(trigger["job_id"])
        assert job.origin == JobOrigin.RISK_EXIT.value
        assert job.exit_reason == ExitReason.SL.value
        assert job.qty == Decimal("2")

        executed = await engine.placement.process_next()
        assert executed.status == JobStatus.FILLED.value
        closed = await engine.store.get(position.id)
        assert closed.status == PositionStatus.CLOSED.value
        assert closed.close_reason == "SL"
        assert closed.sl_triggered

    @pytest.mark.asyncio
    async def test_no_trigger_within_thresholds(self, engine, open_position, price_feed):
        position = await open_position()
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)
        price_feed.set_price("BTCUSDT", "97")

        report = await engine.risk_monitor.tick()

        assert report.checked == 1
        assert report.triggered == 0
        assert engine.placement.pending_count == 0


# ============================================================
# GUARD TESTS
# ============================================================

class TestGuards:
    """Tests for conditions that suppress a SELL."""

    @pytest.mark.asyncio
    async def test_pending_sell_is_skipped(self, engine, open_position, price_feed):
        """Test a second tick while the exit SELL is queued does not queue another."""
        position = await open_position()
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)
        price_feed.set_price("BTCUSDT", "94")
        await engine.risk_monitor.tick()

        price_feed.set_price("BTCUSDT", "90")
        report = await engine.risk_monitor.tick()

        assert report.triggered == 0
        assert report.skipped == 1
        assert engine.placement.pending_count == 1

    @pytest.mark.asyncio
    async def test_residue_below_min_notional_is_not_sold(self, engine, open_position, price_feed):
        position = await open_position(qty="0.01", price="100")
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)

        check = await engine.risk_monitor.evaluate_position(position.id, Decimal("90"))

        assert check.outcome is CheckOutcome.SKIPPED
        assert check.skip_reason == "RESIDUE"
        assert check.job_id is None
        assert engine.placement.pending_count == 0
        assert not (await engine.store.get(position.id)).sl_triggered

    @pytest.mark.asyncio
    async def test_fired_rule_holds_while_exit_in_flight(self, engine, open_position):
        position = await open_position(qty="2")
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)
        first = await engine.risk_monitor.evaluate_position(position.id, Decimal("94"))

        second = await engine.risk_monitor.evaluate_position(position.id, Decimal("90"))

        assert first.outcome is CheckOutcome.TRIGGERED
        assert second.outcome is CheckOutcome.NO_ACTION
        assert engine.placement.pending_count == 1

    @pytest.mark.asyncio
    async def test_rule_fires_again_after_exit_job_cancelled(self, engine, open_position):
        position = await open_position(qty="2")
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)
        first = await engine.risk_monitor.evaluate_position(position.id, Decimal("94"))
        await engine.placement.cancel_job(first.job_id)

        rearmed = await engine.store.get(position.id)
        second = await engine.risk_monitor.evaluate_position(position.id, Decimal("90"))

        assert not rearmed.sl_triggered
        assert second.outcome is CheckOutcome.TRIGGERED
        assert second.job_id != first.job_id

    @pytest.mark.asyncio
    async def test_rule_fires_again_after_rejected_order(self, engine, open_position, price_feed, paper):
        position = await open_position(qty="2")
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)
        price_feed.set_price("BTCUSDT", "94")
        await engine.risk_monitor.tick()
        paper.fail_next(OrderRejected("Account has insufficient balance", error_code="INSUFFICIENT_BALANCE"))
        failed = await engine.placement.process_next()

        price_feed.set_price("BTCUSDT", "40")
        report = await engine.risk_monitor.tick()

        assert failed.status == JobStatus.FAILED.value
        assert report.triggered == 1
        assert report.triggers[0]["reason"] == "SL"
        executed = await engine.placement.process_next()
        assert executed.status == JobStatus.FILLED.value
        assert (await engine.store.get(position.id)).status == PositionStatus.CLOSED.value

    @pytest.mark.asyncio
    async def test_failed_hand_off_rearms(self, engine, open_position, monkeypatch):
        position = await open_position(qty="2")
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)

        async def unavailable(intent):
            raise RuntimeError("queue unavailable")

        monkeypatch.setattr(engine.placement, "submit", unavailable)
        with pytest.raises(RuntimeError):
            await engine.risk_monitor.evaluate_position(position.id, Decimal("94"))

        assert not (await engine.store.get(position.id)).sl_triggered

    @pytest.mark.asyncio
    async def test_manual_sell_in_flight_rearms(self, engine, open_position):
        position = await open_position(qty="2")
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)
        await engine.placement.submit(TradeIntent(
            exchange_account_id=1,
            symbol="BTCUSDT",
            side=Side.SELL,
            qty=Decimal("1"),
            origin=JobOrigin.MANUAL,
            target_position_id=position.id,
        ))

        check = await engine.risk_monitor.evaluate_position(position.id, Decimal("94"))

        assert check.outcome is CheckOutcome.SKIPPED
        assert check.skip_reason == "PENDING_SELL"
        assert not (await engine.store.get(position.id)).sl_triggered

    @pytest.mark.asyncio
    async def test_closed_position_is_skipped(self, engine, open_position):
        position = await open_position()
        await engine.store.bulk_update_risk_config([position.id], STOP_LOSS)
        await engine.store.decrement_remaining(position.id, Decimal("1"))

        check = await engine.risk_monitor.evaluate_position(position.id, Decimal("50"))

        assert check.outcome is CheckOutcome.SKIPPED
        assert check.skip_reason == "CLOSED"

    @pytest.mark.asyncio
    async def test_positions_without_exits_are_ignored(self, engine, open_position, price_feed):
        await open_position()
        price_feed.set_price("BTCUSDT", "1")

        report = await engine.risk_monitor.tick()

        assert report.checked == 0


# ============================================================
# STATE TESTS
# ============================================================

class TestPersistedState:
    """Tests for evaluator state carried between ticks."""

    @pytest.mark.asyncio
    async def test_trailing_peak_survives_ticks(self, engine, open_position, price_feed):
        position = await open_position(price="100")
        await engine.store.bulk_update_risk_config([position.id], TRAILING)

        for price in ("102", "104", "103.5"):
            price_feed.set_price("BTCUSDT", price)
            report = await engine.risk_monitor.tick()
            assert report.triggered == 0

        stored = await engine.store.get(position.id)
        assert stored.tsg_activated
        assert stored.peak_price == Decimal("104")

        price_feed.set_price("BTCUSDT", "102.9")
        report = await engine.risk_monitor.tick()

        assert report.triggered == 1
        assert report.triggers[0]["reason"] == "TSG"
        assert Decimal(report.triggers[0]["trigger_price"]) == Decimal("102.96")


# ============================================================
# ISOLATION TESTS
# ============================================================

class TestIsolation:
    """Tests for per-position error isolation."""

    @pytest.mark.asyncio
    async def test_missing_price_is_reported_and_others_continue(self, engine, open_position, price_feed):
        unpriced = await engine.store.open_or_group(1, "DOGEUSDT", Decimal("100"), Decimal("1"), 0)
        priced = await open_position(qty="1", price="100")
        await engine.store.bulk_update_risk_config([unpriced.id, priced.id], STOP_LOSS)
        price_feed.set_price("BTCUSDT", "90")

        report = await engine.risk_monitor.tick()

        assert report.checked == 2
        assert report.triggered == 1
        assert report.errors[0]["position_id"] == unpriced.id
        assert report.to_dict()["triggers"][0]["position_id"] == priced.id
