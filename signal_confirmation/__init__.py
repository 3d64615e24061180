"""
Signal Confirmation Module.

Delays webhook signals until short-term price action confirms
them, and cancels them on adverse moves or timeout.
"""

from .config import ConfirmationConfig, ConfirmationConfigRepository
from .machine import (
    ConfirmationRule,
    MonitorPhase,
    PriceActionMonitor,
    TickRecord,
    Trend,
    run_sequence,
)
from .manager import ConfirmationManager, MonitorRecord, TradeSignal


__all__ = [
    "ConfirmationConfig",
    "ConfirmationConfigRepository",
    "ConfirmationRule",
    "MonitorPhase",
    "PriceActionMonitor",
    "TickRecord",
    "Trend",
    "run_sequence",
    "ConfirmationManager",
    "MonitorRecord",
    "TradeSignal",
]
