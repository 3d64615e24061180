"""
Confirmation Manager Tests.

============================================================
PURPOSE
============================================================
Tests for the registry that turns confirmed webhook signals
into WEBHOOK trade jobs.

TEST CATEGORIES:
- Start tests: validation, uniqueness, SELL targets
- Tick tests: check interval, confirmation, cancellation
- Cooldown tests
- Operator tests: abort, lookup, summary

============================================================
"""

from decimal import Decimal

import pytest

from core.exceptions import CooldownActive, MonitorAlreadyActive, MonitorNotFound, NoCompatiblePosition
from core.types import JobOrigin, JobStatus, Side
from signal_confirmation import MonitorPhase, TradeSignal


def buy_signal(qty="1", symbol="BTCUSDT", price=None) -> TradeSignal:
    return TradeSignal(
        exchange_account_id=1,
        symbol=symbol,
        side=Side.BUY,
        qty=Decimal(qty),
        price=Decimal(price) if price else None,
    )


def sell_signal(symbol="BTCUSDT", position_id=None) -> TradeSignal:
    return TradeSignal(exchange_account_id=1, symbol=symbol, side=Side.SELL, position_id=position_id)


async def tick_until_done(engine, clock, limit=10):
    """Advance one check interval at a time until no monitor is active."""
    reports = []
    for _ in range(limit):
        clock.advance(seconds=30)
        reports.append(await engine.confirmations.tick_all())
        if engine.confirmations.active_count == 0:
            break
    return reports


# ============================================================
# START TESTS
# ============================================================

class TestStartMonitoring:
    """Tests for ConfirmationManager.start_monitoring()."""

    @pytest.mark.asyncio
    async def test_start_records_entry_price(self, engine):
        record = await engine.confirmations.start_monitoring(buy_signal())

        assert record.phase is MonitorPhase.MONITORING
        assert record.machine.entry_price == Decimal("100")
        assert record.signal_price == Decimal("100")
        assert engine.confirmations.active_count == 1

    @pytest.mark.asyncio
    async def test_buy_requires_qty(self, engine):
        with pytest.raises(ValueError):
            await engine.confirmations.start_monitoring(
                TradeSignal(exchange_account_id=1, symbol="BTCUSDT", side=Side.BUY),
            )

    @pytest.mark.asyncio
    async def test_one_monitor_per_symbol_and_side(self, engine):
        await engine.confirmations.start_monitoring(buy_signal())

        with pytest.raises(MonitorAlreadyActive):
            await engine.confirmations.start_monitoring(buy_signal(qty="2"))

        other = await engine.confirmations.start_monitoring(buy_signal(symbol="ETHUSDT"))
        assert other.is_active

    @pytest.mark.asyncio
    async def test_sell_needs_open_position(self, engine):
        with pytest.raises(NoCompatiblePosition):
            await engine.confirmations.start_monitoring(sell_signal())

    @pytest.mark.asyncio
    async def test_sell_skips_webhook_locked_positions(self, engine, open_position):
        locked = await open_position()
        await engine.admin.set_lock_sell_by_webhook(locked.id, True)

        with pytest.raises(NoCompatiblePosition):
            await engine.confirmations.start_monitoring(sell_signal())
        with pytest.raises(NoCompatiblePosition):
            await engine.confirmations.start_monitoring(sell_signal(position_id=locked.id))

    @pytest.mark.asyncio
    async def test_disabled_confirmation_executes_immediately(self, engine):
        await engine.confirmation_configs.update(1, Side.BUY, {"enabled": False})

        record = await engine.confirmations.start_monitoring(buy_signal())

        assert record.phase is MonitorPhase.CONFIRMED
        assert record.job_id is not None
        assert engine.confirmations.active_count == 0
        assert engine.placement.pending_count == 1


# ============================================================
# TICK TESTS
# ============================================================

class TestTickAll:
    """Tests for ConfirmationManager.tick_all()."""

    @pytest.mark.asyncio
    async def test_monitor_waits_for_check_interval(self, engine, clock):
        await engine.confirmations.start_monitoring(buy_signal())

        clock.advance(seconds=10)
        report = await engine.confirmations.tick_all()

        assert report["checked"] == 0

    @pytest.mark.asyncio
    async def test_lateral_buy_is_executed(self, engine, clock):
        """Test a flat market confirms the BUY and queues a WEBHOOK job."""
        record = await engine.confirmations.start_monitoring(buy_signal(qty="2"))

        reports = await tick_until_done(engine, clock)

        assert len(reports) == 4
        assert reports[-1]["executed"] == 1
        assert record.phase is MonitorPhase.CONFIRMED
        assert record.executed_price == Decimal("100")

        job = await engine.placement.process_next()
        assert job.id == record.job_id
        assert job.origin == JobOrigin.WEBHOOK.value
        assert job.status == JobStatus.FILLED.value
        positions = await engine.store.list_open(1, "BTCUSDT")
        assert positions[0].qty_total == Decimal("2")

    @pytest.mark.asyncio
    async def test_sell_signal_reduces_oldest_position(self, engine, clock, open_position):
        position = await open_position(qty="3")
        record = await engine.confirmations.start_monitoring(sell_signal())

        await tick_until_done(engine, clock)
        job = await engine.placement.process_next()

        assert record.target_position_id == position.id
        assert job.target_position_id == position.id
        assert job.qty == Decimal("3")
        closed = await engine.store.get(position.id)
        assert closed.close_reason == "WEBHOOK"

    @pytest.mark.asyncio
    async def test_adverse_move_cancels_monitor(self, engine, clock, price_feed):
        record = await engine.confirmations.start_monitoring(buy_signal())
        price_feed.set_price("BTCUSDT", "90")

        clock.advance(seconds=30)
        report = await engine.confirmations.tick_all()

        assert report["cancelled"] == 1
        assert record.phase is MonitorPhase.CANCELLED_ADVERSE
        assert record.job_id is None
        assert engine.confirmations.active_count == 0

    @pytest.mark.asyncio
    async def test_confirmation_cancels_opposite_side(self, engine, clock, open_position):
        await open_position()
        await engine.confirmation_configs.update(1, Side.SELL, {"lateral_cycles_min": 10})
        pending_sell = await engine.confirmations.start_monitoring(sell_signal())
        buy = await engine.confirmations.start_monitoring(buy_signal())

        await tick_until_done(engine, clock)

        assert buy.phase is MonitorPhase.CONFIRMED
        assert pending_sell.phase is MonitorPhase.CANCELLED_COOLDOWN
        assert pending_sell.job_id is None


# ============================================================
# COOLDOWN TESTS
# ============================================================

class TestCooldown:
    """Tests for the post-execution cooldown."""

    @pytest.mark.asyncio
    async def test_repeat_signal_rejected_until_cooldown_expires(self, engine, clock):
        await engine.confirmations.start_monitoring(buy_signal())
        await tick_until_done(engine, clock)

        with pytest.raises(CooldownActive) as exc_info:
            await engine.confirmations.start_monitoring(buy_signal())
        assert exc_info.value.until > clock.now()

        clock.advance(minutes=31)
        record = await engine.confirmations.start_monitoring(buy_signal())
        assert record.is_active

    @pytest.mark.asyncio
    async def test_cancelled_monitor_has_no_cooldown(self, engine):
        record = await engine.confirmations.start_monitoring(buy_signal())
        await engine.confirmations.abort(record.id)

        again = await engine.confirmations.start_monitoring(buy_signal())

        assert again.is_active


# ============================================================
# OPERATOR TESTS
# ============================================================

class TestOperatorCommands:
    """Tests for abort, lookup and summary."""

    @pytest.mark.asyncio
    async def test_abort(self, engine):
        record = await engine.confirmations.start_monitoring(buy_signal())

        aborted = await engine.confirmations.abort(record.id, "changed my mind")

        assert aborted.phase is MonitorPhase.CANCELLED_MANUAL
        assert aborted.machine.reason == "changed my mind"
        assert aborted.finished_at is not None

    @pytest.mark.asyncio
    async def test_unknown_monitor(self, engine):
        with pytest.raises(MonitorNotFound):
            await engine.confirmations.abort("missing")

    @pytest.mark.asyncio
    async def test_list_filters(self, engine):
        first = await engine.confirmations.start_monitoring(buy_signal())
        await engine.confirmations.start_monitoring(buy_signal(symbol="ETHUSDT"))
        await engine.confirmations.abort(first.id)

        active = engine.confirmations.list_monitors(active_only=True)
        btc = engine.confirmations.list_monitors(symbol="BTCUSDT")

        assert [r.signal.symbol for r in active] == ["ETHUSDT"]
        assert [r.id for r in btc] == [first.id]
        assert btc[0].to_dict()["phase"] == "CANCELLED_MANUAL"

    @pytest.mark.asyncio
    async def test_summary_reports_savings(self, engine, clock):
        """Test a signal priced above the execution price shows positive savings."""
        await engine.confirmations.start_monitoring(buy_signal(price="102"))
        await tick_until_done(engine, clock)

        summary = engine.confirmations.summary()

        assert summary["executed"] == 1
        assert summary["by_phase"]["CONFIRMED"] == 1
        assert Decimal(summary["avg_savings_pct"]) > 0
        assert summary["best_result"]["symbol"] == "BTCUSDT"
