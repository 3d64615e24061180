"""
Orchestrator Module.

============================================================
PURPOSE
============================================================
Process entry point of the trading engine.

COMPONENTS:
- config: EngineSettings loaded from the environment
- core: setup_logging and the TradingEngine object graph
- cli: argparse command line (run, serve, init-db,
  reconcile, audit)

============================================================
"""

from .config import EngineSettings
from .core import TradingEngine, create_engine, setup_logging

__all__ = [
    "EngineSettings",
    "TradingEngine",
    "create_engine",
    "setup_logging",
]
