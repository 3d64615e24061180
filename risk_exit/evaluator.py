"""
Risk Exit - Evaluator.

============================================================
PURPOSE
============================================================
Pure per-tick evaluation of a position's exit rules.

EVALUATION ORDER (first true wins, one SELL per tick):
1. SL   (price_open - price) / price_open * 100 >= sl_pct
2. TP   (price - price_open) / price_open * 100 >= tp_pct
        TP is a ceiling even while TSG is trailing
3. SG   activates at sg_pct; sells on sg_drop_pct fall from
        the price at activation (fixed reference)
4. TSG  activates at tsg_activation_pct with peak = price;
        peak = max(peak, price); sells on tsg_drop_pct fall
        from the current peak

STATE:
- All *_activated / *_triggered flags are monotonic
- A rule whose triggered flag is set never fires again

============================================================
"""

from dataclasses import dataclass, field, fields, replace
from decimal import Decimal
from typing import Any, Dict, Optional

from core.types import ExitReason
from positions.risk_config import RiskExitConfig
from positions.store import quantize


HUNDRED = Decimal("100")


# ============================================================
# STATE
# ============================================================

@dataclass(frozen=True)
class RiskState:
    """Per-position evaluator state persisted on the position row."""

    peak_price: Optional[Decimal] = None
    sg_reference_price: Optional[Decimal] = None
    sl_triggered: bool = False
    tp_triggered: bool = False
    sg_activated: bool = False
    sg_triggered: bool = False
    tsg_activated: bool = False
    tsg_triggered: bool = False

    @classmethod
    def from_model(cls, model: Any) -> "RiskState":
        return cls(**{f.name: getattr(model, f.name) for f in fields(cls)})

    def diff(self, other: "RiskState") -> Dict[str, Any]:
        """Fields whose value differs in other."""
        return {
            f.name: getattr(other, f.name)
            for f in fields(self)
            if getattr(self, f.name) != getattr(other, f.name)
        }


# ============================================================
# PROXIMITY METRICS
# ============================================================

@dataclass(frozen=True)
class ProximityMetrics:
    """How close the current price is to the TP / SL thresholds."""

    current_move_pct: Decimal
    tp_proximity_pct: Optional[Decimal] = None
    sl_proximity_pct: Optional[Decimal] = None
    distance_to_tp_pct: Optional[Decimal] = None
    distance_to_sl_pct: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {f.name: (None if getattr(self, f.name) is None else str(getattr(self, f.name))) for f in fields(self)}


def move_pct(price_open: Decimal, price: Decimal) -> Decimal:
    """Signed percentage move from price_open."""
    return (price - price_open) / price_open * HUNDRED


def _clamp(value: Decimal) -> Decimal:
    return max(Decimal("0"), min(HUNDRED, value))


def proximity_metrics(price_open: Decimal, price: Decimal, config: RiskExitConfig) -> ProximityMetrics:
    """
    Observability metrics (proximity values clamped to 0..100).
    """
    move = move_pct(price_open, price)
    tp_prox = tp_dist = sl_prox = sl_dist = None

    if config.tp_enabled and config.tp_pct:
        tp_prox = quantize(_clamp(move / config.tp_pct * HUNDRED))
        tp_dist = quantize(max(Decimal("0"), config.tp_pct - move))
    if config.sl_enabled and config.sl_pct:
        sl_prox = quantize(_clamp(-move / config.sl_pct * HUNDRED))
        sl_dist = quantize(max(Decimal("0"), config.sl_pct + move))

    return ProximityMetrics(
        current_move_pct=quantize(move),
        tp_proximity_pct=tp_prox,
        sl_proximity_pct=sl_prox,
        distance_to_tp_pct=tp_dist,
        distance_to_sl_pct=sl_dist,
    )


# ============================================================
# DECISION
# ============================================================

@dataclass(frozen=True)
class ExitDecision:
    """Result of one evaluation."""

    state: RiskState
    """State after the tick (flags, peak, SG reference)."""

    metrics: ProximityMetrics
    trigger: Optional[ExitReason] = None
    trigger_price: Optional[Decimal] = None
    """Threshold price of the rule that fired."""

    notes: Dict[str, Any] = field(default_factory=dict)

    @property
    def should_sell(self) -> bool:
        return self.trigger is not None


# ============================================================
# EVALUATE
# ============================================================

def evaluate(
    price_open: Decimal,
    price: Decimal,
    config: RiskExitConfig,
    state: RiskState,
) -> ExitDecision:
    """
    Evaluate one tick.

    Pure: no I/O, no clock. The caller persists decision.state and
    hands off a SELL when decision.should_sell.
    """
    if price_open <= 0:
        raise ValueError(f"price_open must be positive, got {price_open}")

    move = move_pct(price_open, price)
    metrics = proximity_metrics(price_open, price, config)
    new = state

    def fire(reason: ExitReason, threshold: Decimal, flag: str, **notes) -> ExitDecision:
        return ExitDecision(
            state=replace(new, **{flag: True}),
            metrics=metrics,
            trigger=reason,
            trigger_price=quantize(threshold),
            notes=notes,
        )

    # 1. Stop Loss
    if config.sl_enabled and not new.sl_triggered and -move >= config.sl_pct:
        return fire(ExitReason.SL, price_open * (1 - config.sl_pct / HUNDRED), "sl_triggered")

    # 2. Take Profit
    if config.tp_enabled and not new.tp_triggered and move >= config.tp_pct:
        return fire(ExitReason.TP, price_open * (1 + config.tp_pct / HUNDRED), "tp_triggered")

    # 3. Stop Gain (fixed reference at activation)
    if config.sg_enabled and not new.sg_triggered:
        if not new.sg_activated and move >= config.sg_pct:
            new = replace(new, sg_activated=True, sg_reference_price=price)
        elif new.sg_activated and new.sg_reference_price:
            reference = new.sg_reference_price
            drop = (reference - price) / reference * HUNDRED
            if drop >= config.sg_drop_pct:
                return fire(
                    ExitReason.SG,
                    reference * (1 - config.sg_drop_pct / HUNDRED),
                    "sg_triggered",
                    reference_price=str(reference),
                )

    # 4. Trailing Stop Gain (drop measured from the running peak)
    if config.tsg_enabled and not new.tsg_triggered:
        if not new.tsg_activated:
            if move >= config.tsg_activation_pct:
                new = replace(new, tsg_activated=True, peak_price=price)
        else:
            peak = max(new.peak_price or price, price)
            if peak != new.peak_price:
                new = replace(new, peak_price=peak)
            drop = (peak - price) / peak * HUNDRED
            if drop >= config.tsg_drop_pct:
                return fire(
                    ExitReason.TSG,
                    peak * (1 - config.tsg_drop_pct / HUNDRED),
                    "tsg_triggered",
                    peak_price=str(peak),
                )

    return ExitDecision(state=new, metrics=metrics)
