"""
Price Action Confirmation Machine Tests.

============================================================
PURPOSE
============================================================
Tests for the per-signal state machine and its configuration.

TEST CATEGORIES:
- Confirmation tests: lateral and momentum rules
- Cancellation tests: adverse move, timeout, operator
- Config tests: aliases, validation, persistence

============================================================
"""

from decimal import Decimal

import pytest

from core.exceptions import ConfigurationError
from core.types import Side
from signal_confirmation import (
    ConfirmationConfig,
    ConfirmationRule,
    MonitorPhase,
    PriceActionMonitor,
    Trend,
    run_sequence,
)


BUY = ConfirmationConfig.buy_defaults()
SELL = ConfirmationConfig.sell_defaults()


# ============================================================
# CONFIRMATION TESTS
# ============================================================

class TestConfirmation:
    """Tests for the CONFIRMED outcomes."""

    def test_lateral_confirmation(self):
        """Test small moves around a new low count as lateral cycles."""
        config = BUY.with_updates({"lateral_cycles_min": 3})

        phase, tick = run_sequence(Side.BUY, config, ["100", "100.1", "99.95", "100.05", "100.02"])

        assert phase is MonitorPhase.CONFIRMED
        assert tick == 4

    def test_momentum_confirmation(self):
        monitor = PriceActionMonitor(Side.BUY, BUY, Decimal("100"))

        monitor.tick(Decimal("100.8"), 30)
        phase = monitor.tick(Decimal("101"), 60)

        assert phase is MonitorPhase.CONFIRMED
        assert monitor.rule is ConfirmationRule.MOMENTUM
        assert monitor.final_tick == 2
        assert monitor.trend is Trend.FAVORABLE

    def test_sell_side_mirrors_buy(self):
        phase, tick = run_sequence(Side.SELL, SELL, ["100", "99.4", "99.3"])

        assert phase is MonitorPhase.CONFIRMED
        assert tick == 2

    def test_drop_beyond_tolerance_resets_counters(self):
        monitor = PriceActionMonitor(Side.BUY, BUY, Decimal("100"))
        monitor.tick(Decimal("100.1"), 30)
        monitor.tick(Decimal("100.2"), 60)

        monitor.tick(Decimal("99"), 90)

        assert monitor.lateral_cycles == 0
        assert monitor.extreme == Decimal("99")
        assert monitor.trend is Trend.ADVERSE
        assert monitor.phase is MonitorPhase.MONITORING

    def test_terminal_monitor_ignores_ticks(self):
        monitor = PriceActionMonitor(Side.BUY, BUY, Decimal("100"))
        monitor.tick(Decimal("100.8"), 30)
        monitor.tick(Decimal("101"), 60)

        assert monitor.tick(Decimal("50"), 90) is MonitorPhase.CONFIRMED
        assert monitor.ticks == 2

    def test_history_records_every_tick(self):
        monitor = PriceActionMonitor(Side.BUY, BUY, Decimal("100"))

        monitor.tick(Decimal("100.1"), 30)
        monitor.tick(Decimal("100.2"), 60)

        assert [record.index for record in monitor.history] == [1, 2]
        assert monitor.history[-1].lateral_cycles == 2

    def test_rejects_non_positive_entry(self):
        with pytest.raises(ValueError):
            PriceActionMonitor(Side.BUY, BUY, Decimal("0"))


# ============================================================
# CANCELLATION TESTS
# ============================================================

class TestCancellation:
    """Tests for the CANCELLED_* outcomes."""

    def test_adverse_move_cancels(self):
        phase, tick = run_sequence(Side.BUY, BUY, ["100", "93"])

        assert phase is MonitorPhase.CANCELLED_ADVERSE
        assert tick == 1

    def test_sell_adverse_is_a_rise(self):
        phase, _ = run_sequence(Side.SELL, SELL, ["100", "107"])

        assert phase is MonitorPhase.CANCELLED_ADVERSE

    def test_timeout(self):
        """Test undecided prices past max_monitoring_time_min end in a timeout."""
        phase, tick = run_sequence(
            Side.BUY, BUY, ["100", "100.5", "100.5", "100.5", "100.5"], interval_seconds=1200,
        )

        assert phase is MonitorPhase.CANCELLED_TIMEOUT
        assert tick == 4

    def test_manual_cancel(self):
        monitor = PriceActionMonitor(Side.BUY, BUY, Decimal("100"))

        monitor.cancel(MonitorPhase.CANCELLED_MANUAL, "operator")

        assert monitor.phase is MonitorPhase.CANCELLED_MANUAL
        assert monitor.reason == "operator"

    def test_cancel_requires_cancellation_phase(self):
        monitor = PriceActionMonitor(Side.BUY, BUY, Decimal("100"))

        with pytest.raises(ValueError):
            monitor.cancel(MonitorPhase.CONFIRMED, "nope")

    def test_cancel_leaves_confirmed_monitor_unless_forced(self):
        monitor = PriceActionMonitor(Side.BUY, BUY, Decimal("100"))
        monitor.confirm_without_monitoring("disabled")

        monitor.cancel(MonitorPhase.CANCELLED_MANUAL, "late")
        assert monitor.phase is MonitorPhase.CONFIRMED

        monitor.cancel(MonitorPhase.CANCELLED_ADVERSE, "hand-off failed", force=True)
        assert monitor.phase is MonitorPhase.CANCELLED_ADVERSE


# ============================================================
# METRIC TESTS
# ============================================================

class TestMetrics:
    """Tests for savings and efficiency."""

    def test_buy_savings_and_efficiency(self):
        monitor = PriceActionMonitor(Side.BUY, BUY, Decimal("100"))
        monitor.tick(Decimal("98"), 30)

        assert monitor.savings_pct(Decimal("100"), Decimal("99")) == Decimal("1")
        assert monitor.efficiency_pct(Decimal("100"), Decimal("99")) == Decimal("50")

    def test_efficiency_is_zero_without_improvement(self):
        monitor = PriceActionMonitor(Side.BUY, BUY, Decimal("100"))

        assert monitor.efficiency_pct(Decimal("100"), Decimal("100")) == Decimal("0")


# ============================================================
# CONFIG TESTS
# ============================================================

class TestConfirmationConfig:
    """Tests for ConfirmationConfig."""

    def test_side_defaults(self):
        assert BUY.trigger_pct == Decimal("0.75")
        assert SELL.trigger_pct == Decimal("0.5")
        assert BUY.check_interval_sec == 30
        assert BUY.max_monitoring_time_min == 60

    def test_side_specific_aliases(self):
        updated = BUY.with_updates({"rise_trigger_pct": "1.2", "max_fall_pct": 4})

        assert updated.trigger_pct == Decimal("1.2")
        assert updated.max_adverse_pct == Decimal("4")

    def test_alias_of_other_side_is_rejected(self):
        with pytest.raises(ConfigurationError):
            SELL.with_updates({"rise_trigger_pct": "1"})

    def test_unknown_key_is_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            BUY.with_updates({"speed": 3})

        assert exc_info.value.context["config_key"] == "speed"

    def test_invalid_values_are_rejected(self):
        with pytest.raises(ConfigurationError):
            BUY.with_updates({"check_interval_sec": 0})
        with pytest.raises(ConfigurationError):
            BUY.with_updates({"lateral_cycles_min": "many"})

    def test_enabled_is_parsed_strictly(self):
        assert BUY.with_updates({"enabled": "false"}).enabled is False
        with pytest.raises(ConfigurationError):
            BUY.with_updates({"enabled": "nope"})

    def test_non_finite_percentages_are_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            BUY.with_updates({"rise_trigger_pct": "NaN"})

        assert exc_info.value.context["config_key"] == "trigger_pct"

    def test_to_dict_is_json_friendly(self):
        data = SELL.to_dict()

        assert data["side"] == "SELL"
        assert data["trigger_pct"] == "0.5"


class TestConfirmationConfigRepository:
    """Tests for ConfirmationConfigRepository."""

    @pytest.mark.asyncio
    async def test_defaults_when_nothing_stored(self, engine):
        config = await engine.confirmation_configs.get(1, Side.SELL)

        assert config == SELL

    @pytest.mark.asyncio
    async def test_update_persists_per_side(self, engine):
        await engine.confirmation_configs.update(1, Side.BUY, {"lateral_cycles_min": 6})

        stored = await engine.confirmation_configs.get_all(1)

        assert stored["BUY"].lateral_cycles_min == 6
        assert stored["SELL"].lateral_cycles_min == SELL.lateral_cycles_min
        assert (await engine.confirmation_configs.get(2, Side.BUY)) == BUY

    @pytest.mark.asyncio
    async def test_invalid_update_is_not_stored(self, engine):
        with pytest.raises(ConfigurationError):
            await engine.confirmation_configs.update(1, Side.BUY, {"max_adverse_pct": "-1"})

        assert await engine.confirmation_configs.get(1, Side.BUY) == BUY
