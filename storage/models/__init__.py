"""
Storage Models Package.

ORM models for the trading engine database, organized by domain.

============================================================
MODEL ORGANIZATION
============================================================

Ledger (positions.py)
- PositionModel

Execution (executions.py)
- TradeJobModel
- ExecutionModel

Account settings (settings.py)
- AccountTradingDefaultsModel
- ConfirmationConfigModel

Operations (operations.py)
- ReconciliationLogModel
- ScheduledJobRunModel

============================================================
"""

from .base import Base, Money, TimestampMixin, UTCDateTime
from .positions import PositionModel
from .executions import ExecutionModel, TradeJobModel
from .settings import AccountTradingDefaultsModel, ConfirmationConfigModel
from .operations import ReconciliationLogModel, ScheduledJobRunModel

__all__ = [
    "Base",
    "Money",
    "TimestampMixin",
    "UTCDateTime",
    "PositionModel",
    "ExecutionModel",
    "TradeJobModel",
    "AccountTradingDefaultsModel",
    "ConfirmationConfigModel",
    "ReconciliationLogModel",
    "ScheduledJobRunModel",
]
