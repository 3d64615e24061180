"""
Positions Package.

============================================================
PURPOSE
============================================================
The position ledger: opening, grouping, decrementing and
configuring positions.

COMPONENTS:
- PositionStore: ledger operations (store.py)
- RiskExitConfig / RiskConfigPatch: exit rule config (risk_config.py)
- AccountDefaultsService: per-account defaults (account_defaults.py)
- PositionAdmin: operator commands (admin.py, imported directly)

============================================================
"""

from .store import PositionStore, PositionFilter, ConcurrentPositionUpdate, quantize
from .risk_config import RiskExitConfig, RiskConfigPatch
from .account_defaults import AccountDefaults, AccountDefaultsService

__all__ = [
    "PositionStore",
    "PositionFilter",
    "ConcurrentPositionUpdate",
    "quantize",
    "RiskExitConfig",
    "RiskConfigPatch",
    "AccountDefaults",
    "AccountDefaultsService",
]
