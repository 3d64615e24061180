"""
Execution Engine - Adapters Package.

============================================================
PURPOSE
============================================================
Exchange adapter implementations.

AVAILABLE ADAPTERS:
- BinanceSpotAdapter: Binance Spot REST API (REAL accounts)
- PaperExchangeAdapter: in-memory fills (SIMULATION accounts, tests)

ERROR HANDLING:
- ExchangeUnavailable: transient, retried with backoff
- OrderRejected: permanent, fails the job

============================================================
"""

from .base import ExchangeAdapter, aggregate_trades
from .paper import PaperExchangeAdapter, PaperConfig
from .binance import BinanceSpotAdapter, ApiCredentials

__all__ = [
    "ExchangeAdapter",
    "aggregate_trades",
    "PaperExchangeAdapter",
    "PaperConfig",
    "BinanceSpotAdapter",
    "ApiCredentials",
]
