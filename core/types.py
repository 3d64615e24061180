"""
Core Module - Domain Enumerations.

Enumerations shared by the ledger, execution, risk-exit,
confirmation and reconciliation subsystems. Values are the
strings persisted in the database.
"""

from enum import Enum


class Side(Enum):
    """Trade side. Positions are long, opened by BUY."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class TradeMode(Enum):
    """Account trading mode; selects exchange adapter and price feed."""

    REAL = "REAL"
    SIMULATION = "SIMULATION"


class PositionStatus(Enum):
    """Position status. CLOSED iff qty_remaining == 0."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"


class JobStatus(Enum):
    """
    Trade job lifecycle state.

    PENDING -> EXECUTING -> FILLED | PARTIALLY_FILLED | FAILED | CANCELLED
    """

    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    FILLED = "FILLED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in {JobStatus.FILLED, JobStatus.FAILED, JobStatus.CANCELLED}

    def is_in_flight(self) -> bool:
        """Job may still produce fills."""
        return self in {JobStatus.PENDING, JobStatus.EXECUTING, JobStatus.PARTIALLY_FILLED}


class JobOrigin(Enum):
    """What created a trade job."""

    WEBHOOK = "WEBHOOK"
    RISK_EXIT = "RISK_EXIT"
    MANUAL = "MANUAL"
    RECONCILIATION = "RECONCILIATION"


class ExitReason(Enum):
    """Why a position was (or is being) sold."""

    SL = "SL"
    TP = "TP"
    SG = "SG"
    TSG = "TSG"
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"
    RECONCILIATION = "RECONCILIATION"


class OrphanReason(Enum):
    """Why a SELL execution could not be linked to a position."""

    POSITION_ALREADY_CLOSED = "POSITION_ALREADY_CLOSED"
    QTY_EXCEEDS_REMAINING = "QTY_EXCEEDS_REMAINING"
    NO_POSITION_ID = "NO_POSITION_ID"
    POSITION_NOT_FOUND = "POSITION_NOT_FOUND"
    SYMBOL_MISMATCH = "SYMBOL_MISMATCH"


__all__ = [
    "Side",
    "TradeMode",
    "PositionStatus",
    "JobStatus",
    "JobOrigin",
    "ExitReason",
    "OrphanReason",
]
