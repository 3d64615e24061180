"""
Signal Confirmation - Price Action Machine.

============================================================
PURPOSE
============================================================
Decides whether a webhook signal may be executed, from the
short-term price behavior observed after it arrived.

STATES:
    MONITORING -> CONFIRMED
               -> CANCELLED_TIMEOUT
               -> CANCELLED_ADVERSE
               -> CANCELLED_MANUAL
               -> CANCELLED_COOLDOWN

PER TICK (BUY watches the running minimum, SELL the maximum):
1. A new extreme further than lateral_tolerance_pct resets
   both counters; a marginal new extreme (inside tolerance)
   moves the extreme without counting
2. Otherwise, favorable move from the extreme:
   <= tolerance      lateral_cycles += 1, momentum_cycles = 0
   >= trigger_pct    momentum_cycles += 1, lateral_cycles = 0
   in between        both reset
3. lateral_cycles >= lateral_cycles_min      -> CONFIRMED
4. momentum_cycles >= trigger_cycles_min     -> CONFIRMED
5. adverse move from entry > max_adverse_pct -> CANCELLED_ADVERSE
6. elapsed > max_monitoring_time_min         -> CANCELLED_TIMEOUT

DETERMINISM:
Pure function of (price sequence, elapsed seconds, config).
No clock, no I/O.

============================================================
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from core.types import Side

from .config import ConfirmationConfig


HUNDRED = Decimal("100")


class MonitorPhase(Enum):
    """Lifecycle phase of a price-action monitor."""

    MONITORING = "MONITORING"
    CONFIRMED = "CONFIRMED"
    CANCELLED_TIMEOUT = "CANCELLED_TIMEOUT"
    CANCELLED_ADVERSE = "CANCELLED_ADVERSE"
    CANCELLED_MANUAL = "CANCELLED_MANUAL"
    CANCELLED_COOLDOWN = "CANCELLED_COOLDOWN"

    @property
    def is_terminal(self) -> bool:
        return self is not MonitorPhase.MONITORING

    @property
    def is_cancelled(self) -> bool:
        return self.value.startswith("CANCELLED")


class ConfirmationRule(Enum):
    LATERAL = "LATERAL"
    MOMENTUM = "MOMENTUM"


class Trend(Enum):
    """Last observed short-term trend (for display)."""

    LATERAL = "LATERAL"
    FAVORABLE = "FAVORABLE"
    ADVERSE = "ADVERSE"
    UNDECIDED = "UNDECIDED"


@dataclass(frozen=True)
class TickRecord:
    """One evaluated tick."""

    index: int
    price: Decimal
    extreme: Decimal
    lateral_cycles: int
    momentum_cycles: int
    phase: MonitorPhase


# ============================================================
# PRICE ACTION MONITOR
# ============================================================

class PriceActionMonitor:
    """
    State machine for one pending signal.

    The entry price is tick 0; every call to tick() is the next
    index.
    """

    def __init__(self, side: Side, config: ConfirmationConfig, entry_price: Decimal):
        if entry_price <= 0:
            raise ValueError(f"entry_price must be positive, got {entry_price}")
        self.side = side
        self.config = config
        self.entry_price = entry_price
        self.extreme = entry_price
        self.last_price = entry_price
        self.lateral_cycles = 0
        self.momentum_cycles = 0
        self.ticks = 0
        self.phase = MonitorPhase.MONITORING
        self.trend = Trend.UNDECIDED
        self.rule: Optional[ConfirmationRule] = None
        self.reason: Optional[str] = None
        self.final_tick: Optional[int] = None
        self.history: List[TickRecord] = []

    # --------------------------------------------------------
    # DIRECTION HELPERS
    # --------------------------------------------------------

    def _is_new_extreme(self, price: Decimal) -> bool:
        return price < self.extreme if self.side is Side.BUY else price > self.extreme

    def _favorable_move_pct(self, price: Decimal, reference: Decimal) -> Decimal:
        """Percent move from reference in the direction that confirms the signal."""
        if self.side is Side.BUY:
            return (price - reference) / reference * HUNDRED
        return (reference - price) / reference * HUNDRED

    def adverse_move_pct(self) -> Decimal:
        """Worst move against the signal since entry."""
        return -self._favorable_move_pct(self.extreme, self.entry_price)

    # --------------------------------------------------------
    # TICK
    # --------------------------------------------------------

    def tick(self, price: Decimal, elapsed_seconds: float) -> MonitorPhase:
        """
        Feed the next price.

        Args:
            price: Current market price
            elapsed_seconds: Seconds since monitoring started

        Returns:
            Phase after the tick
        """
        if self.phase.is_terminal:
            return self.phase
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")

        config = self.config
        self.ticks += 1
        self.last_price = price

        if self._is_new_extreme(price):
            beyond = -self._favorable_move_pct(price, self.extreme) > config.lateral_tolerance_pct
            self.extreme = price
            if beyond:
                self.lateral_cycles = 0
                self.momentum_cycles = 0
                self.trend = Trend.ADVERSE
        else:
            move = self._favorable_move_pct(price, self.extreme)
            if move <= config.lateral_tolerance_pct:
                self.lateral_cycles += 1
                self.momentum_cycles = 0
                self.trend = Trend.LATERAL
            elif move >= config.trigger_pct:
                self.momentum_cycles += 1
                self.lateral_cycles = 0
                self.trend = Trend.FAVORABLE
            else:
                self.lateral_cycles = 0
                self.momentum_cycles = 0
                self.trend = Trend.UNDECIDED

        if self.lateral_cycles >= config.lateral_cycles_min:
            self._finish(
                MonitorPhase.CONFIRMED,
                f"Lateral for {self.lateral_cycles} cycles",
                ConfirmationRule.LATERAL,
            )
        elif self.momentum_cycles >= config.trigger_cycles_min:
            self._finish(
                MonitorPhase.CONFIRMED,
                f"Momentum for {self.momentum_cycles} cycles",
                ConfirmationRule.MOMENTUM,
            )
        elif self.adverse_move_pct() > config.max_adverse_pct:
            self._finish(
                MonitorPhase.CANCELLED_ADVERSE,
                f"Adverse move {self.adverse_move_pct():.2f}% > {config.max_adverse_pct}%",
            )
        elif elapsed_seconds > config.max_monitoring_time_min * 60:
            self._finish(
                MonitorPhase.CANCELLED_TIMEOUT,
                f"Monitoring time {elapsed_seconds / 60:.1f}min > {config.max_monitoring_time_min}min",
            )

        self.history.append(TickRecord(
            index=self.ticks,
            price=price,
            extreme=self.extreme,
            lateral_cycles=self.lateral_cycles,
            momentum_cycles=self.momentum_cycles,
            phase=self.phase,
        ))
        return self.phase

    def cancel(self, phase: MonitorPhase, reason: str, force: bool = False) -> None:
        """
        Move to a cancelled phase (operator abort, cooldown, failure).

        A terminal monitor is left untouched unless force is set, which
        lets a CONFIRMED monitor whose order hand-off failed be cancelled.
        """
        if not phase.is_cancelled:
            raise ValueError(f"{phase.value} is not a cancellation phase")
        if self.phase.is_terminal and not force:
            return
        self._finish(phase, reason)

    def confirm_without_monitoring(self, reason: str) -> None:
        """Confirm at entry (confirmation disabled for the side)."""
        if self.phase.is_terminal:
            return
        self._finish(MonitorPhase.CONFIRMED, reason)

    def _finish(self, phase: MonitorPhase, reason: str, rule: Optional[ConfirmationRule] = None) -> None:
        self.phase = phase
        self.reason = reason
        self.rule = rule
        self.final_tick = self.ticks

    # --------------------------------------------------------
    # METRICS
    # --------------------------------------------------------

    def savings_pct(self, signal_price: Decimal, executed_price: Decimal) -> Decimal:
        """Price improvement over the signal price, favorable direction positive."""
        if self.side is Side.BUY:
            return (signal_price - executed_price) / signal_price * HUNDRED
        return (executed_price - signal_price) / signal_price * HUNDRED

    def efficiency_pct(self, signal_price: Decimal, executed_price: Decimal) -> Decimal:
        """
        How much of the best available improvement was captured.

        0 when the extreme never improved on the signal price.
        """
        if self.side is Side.BUY:
            span = signal_price - self.extreme
            gained = signal_price - executed_price
        else:
            span = self.extreme - signal_price
            gained = executed_price - signal_price
        if span <= 0:
            return Decimal("0")
        return max(Decimal("0"), min(HUNDRED, gained / span * HUNDRED))


def run_sequence(
    side: Side,
    config: ConfirmationConfig,
    prices: Iterable[Decimal],
    interval_seconds: Optional[float] = None,
) -> Tuple[MonitorPhase, Optional[int]]:
    """
    Run a price sequence through a fresh monitor.

    prices[0] is the entry price; the others are ticks spaced
    interval_seconds apart (config.check_interval_sec by default).

    Returns:
        (final phase, index of the tick that ended monitoring)
    """
    prices = [Decimal(str(p)) for p in prices]
    interval = config.check_interval_sec if interval_seconds is None else interval_seconds
    monitor = PriceActionMonitor(side, config, prices[0])
    for index, price in enumerate(prices[1:], start=1):
        if monitor.tick(price, index * interval).is_terminal:
            break
    return monitor.phase, monitor.final_tick
