"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Wires every engine subsystem into one process.

- Builds the object graph from EngineSettings
- Controls startup and shutdown order
- Registers the periodic jobs on the scheduler
- Handles signals (SIGINT, SIGTERM)

============================================================
ARCHITECTURAL POSITION
============================================================
- This module has NO business logic
- It does NOT decide trades
- It ONLY wires and coordinates

============================================================
STARTUP ORDER
============================================================
1. database (verify, create schema)
2. order placement workers
3. scheduler (risk_exit, signal_confirmation, reconciliation)

Shutdown runs in reverse.

============================================================
"""

import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, Optional, Union

from core.clock import ClockProtocol, SystemClock
from core.events import EventBus
from core.types import TradeMode
from database.engine import Database
from execution_engine.adapters import (
    ApiCredentials,
    BinanceSpotAdapter,
    ExchangeAdapter,
    PaperExchangeAdapter,
)
from execution_engine.config import ExecutionEngineConfig, LedgerConfig
from execution_engine.linker import ExecutionLinker
from execution_engine.order_placement import OrderPlacementService
from execution_engine.price_feed import BinancePriceFeed, TradeModePriceFeed
from positions import AccountDefaultsService, PositionStore
from positions.admin import PositionAdmin
from reconciliation import ReconciliationService
from risk_exit import RiskExitMonitor
from scheduler import JobRegistry
from signal_confirmation import ConfirmationConfigRepository, ConfirmationManager

from .config import EngineSettings


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    correlation_id: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging.

    Args:
        level: Log level
        log_format: Output format (json or text)
        correlation_id: Correlation ID for tracing

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
                "correlation_id": correlation_id or "",
            })
        )
    else:
        formatter = logging.Formatter(
            f"%(asctime)s | %(levelname)-8s | %(name)s | {correlation_id or ''} | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # aiosqlite and the connection pool are chatty at DEBUG
    logging.getLogger("aiosqlite").setLevel(max(log_level, logging.INFO))

    return logging.getLogger("orchestrator")


logger = logging.getLogger(__name__)


# ============================================================
# TRADING ENGINE
# ============================================================

class TradingEngine:
    """
    The assembled engine.

    Every collaborator can be injected; anything not injected is
    built from settings. Tests inject a MockClock, static price
    feeds and a paper exchange.

    Usage:
        engine = TradingEngine(EngineSettings.from_env())
        await engine.run_forever()
    """

    JOB_RISK_EXIT = "risk_exit"
    JOB_CONFIRMATION = "signal_confirmation"
    JOB_RECONCILIATION = "reconciliation"

    def __init__(
        self,
        settings: EngineSettings,
        db: Optional[Database] = None,
        clock: Optional[ClockProtocol] = None,
        prices: Optional[TradeModePriceFeed] = None,
        exchanges: Optional[Union[ExchangeAdapter, Dict[TradeMode, ExchangeAdapter]]] = None,
        config: Optional[ExecutionEngineConfig] = None,
    ):
        self._settings = settings
        self.clock = clock or SystemClock()
        self.config = config or ExecutionEngineConfig.for_production()
        self.config.ledger = LedgerConfig(
            default_grouping_window_minutes=settings.grouping_window_minutes,
            min_sell_notional_usd=settings.min_sell_notional_usd,
        )
        self.config.reconciliation.interval_seconds = settings.reconciliation_interval_sec

        self.db = db or Database(settings.database_url)
        self.events = EventBus()

        # Market access
        self._owned_feed: Optional[BinancePriceFeed] = None
        if prices is None:
            self._owned_feed = BinancePriceFeed(base_url=settings.exchange_base_url)
            prices = TradeModePriceFeed(real=self._owned_feed)
        self.prices = prices

        if exchanges is None:
            exchanges = self._build_exchanges()
        elif isinstance(exchanges, ExchangeAdapter):
            exchanges = {mode: exchanges for mode in TradeMode}
        self.exchanges: Dict[TradeMode, ExchangeAdapter] = exchanges

        # Ledger
        self.store = PositionStore(self.db, self.clock, self.events)
        self.defaults = AccountDefaultsService(
            self.db,
            default_grouping_window_minutes=settings.grouping_window_minutes,
            default_min_sell_notional_usd=settings.min_sell_notional_usd,
        )
        self.linker = ExecutionLinker(self.store, self.defaults, self.events, self.config.ledger)
        self.placement = OrderPlacementService(
            self.linker, self.defaults, self.exchanges, self.events, self.clock, self.config,
        )

        # Decision surfaces
        self.admin = PositionAdmin(self.store, self.placement, self.prices)
        self.risk_monitor = RiskExitMonitor(self.store, self.placement, self.prices, self.defaults, self.events)
        self.confirmation_configs = ConfirmationConfigRepository(self.db)
        self.confirmations = ConfirmationManager(
            self.placement, self.store, self.prices, self.defaults, self.confirmation_configs, self.clock,
        )
        self.reconciliation = ReconciliationService(
            self.linker, self.exchanges, self.defaults, self.clock, self.config.reconciliation, self.events,
        )

        # Scheduler
        self.scheduler = JobRegistry(self.db, self.clock)
        self._register_jobs()

        # Runtime state
        self._running = False
        self._shutdown = asyncio.Event()
        self._signals_installed = False

    def _build_exchanges(self) -> Dict[TradeMode, ExchangeAdapter]:
        paper = PaperExchangeAdapter(self.prices.for_mode(TradeMode.SIMULATION), clock=self.clock)
        credentials = {}
        if self._settings.has_exchange_credentials:
            credentials[self._settings.exchange_account_id] = ApiCredentials(
                api_key=self._settings.exchange_api_key,
                api_secret=self._settings.exchange_api_secret,
            )
        else:
            logger.warning("No exchange credentials configured; REAL accounts cannot place orders")
        real = BinanceSpotAdapter(credentials, base_url=self._settings.exchange_base_url)
        return {TradeMode.REAL: real, TradeMode.SIMULATION: paper}

    def _register_jobs(self) -> None:
        self.scheduler.register(
            self.JOB_RISK_EXIT,
            self.risk_monitor.tick,
            interval_sec=self._settings.risk_exit_interval_sec,
            timeout_sec=max(self._settings.risk_exit_interval_sec * 5, 30),
            description="Evaluate SL/TP/SG/TSG on open positions",
        )
        self.scheduler.register(
            self.JOB_CONFIRMATION,
            self.confirmations.tick_all,
            interval_sec=self._settings.confirmation_interval_sec,
            description="Advance price-action confirmation monitors",
        )
        self.scheduler.register(
            self.JOB_RECONCILIATION,
            self.reconciliation.run_scheduled,
            interval_sec=self._settings.reconciliation_interval_sec,
            enabled=self.config.reconciliation.enabled,
            description="Import missing exchange fills and relink orphaned SELLs",
        )

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def is_running(self) -> bool:
        return self._running

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def init_db(self) -> None:
        await self.db.verify_connection()
        await self.db.create_all()

    async def start(self, scheduler: bool = True) -> None:
        """
        Start the engine.

        Args:
            scheduler: start the periodic jobs (False for API-only
                       processes that still place orders)
        """
        if self._running:
            logger.warning("Engine already running")
            return

        logger.info("=== ENGINE STARTUP SEQUENCE ===")
        await self.init_db()
        await self.placement.start()
        if scheduler:
            await self.scheduler.start()
        self._running = True
        self._shutdown.clear()
        logger.info(f"=== ENGINE STARTUP COMPLETE === {self._settings.to_dict()}")

    async def stop(self) -> None:
        """Stop the engine gracefully."""
        if not self._running:
            return

        logger.info("=== ENGINE SHUTDOWN SEQUENCE ===")
        await self.scheduler.stop()
        await self.placement.stop()
        for adapter in set(self.exchanges.values()):
            await adapter.disconnect()
        if self._owned_feed is not None:
            await self._owned_feed.disconnect()
        await self.db.dispose()

        self._running = False
        self._shutdown.set()
        self._restore_signal_handlers()
        logger.info("=== ENGINE SHUTDOWN COMPLETE ===")

    async def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM or request_shutdown()."""
        self._install_signal_handlers()
        await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    # --------------------------------------------------------
    # Signal Handlers
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install signal handlers for graceful shutdown."""
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, self._signal_handler)
        else:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._signal_handler, sig, None)
        self._signals_installed = True

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if not self._signals_installed or sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        self._signals_installed = False

    def _signal_handler(self, signum: Any, frame: Any) -> None:
        logger.info(f"Received signal {signum}")
        self.request_shutdown()

    # --------------------------------------------------------
    # Status
    # --------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "scheduler_running": self.scheduler.is_running,
            "jobs": self.scheduler.names,
            "pending_jobs": self.placement.pending_count,
            "active_monitors": self.confirmations.active_count,
            "events_published": self.events.published_count,
        }


def create_engine(settings: Optional[EngineSettings] = None, **kwargs: Any) -> TradingEngine:
    """Create a TradingEngine from settings, or from the environment."""
    return TradingEngine(settings or EngineSettings.from_env(), **kwargs)
