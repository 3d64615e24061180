"""
Risk Exit Module.

Stop Loss, Take Profit, Stop Gain and Trailing Stop Gain
evaluation for open positions.
"""

from .evaluator import (
    ExitDecision,
    ProximityMetrics,
    RiskState,
    evaluate,
    move_pct,
    proximity_metrics,
)
from .monitor import CheckOutcome, PositionCheck, RiskExitMonitor, TickReport


__all__ = [
    "ExitDecision",
    "ProximityMetrics",
    "RiskState",
    "evaluate",
    "move_pct",
    "proximity_metrics",
    "CheckOutcome",
    "PositionCheck",
    "RiskExitMonitor",
    "TickReport",
]
