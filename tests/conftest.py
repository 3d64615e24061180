"""
Shared test fixtures.

============================================================
PURPOSE
============================================================
Builds a fully wired engine against a throwaway SQLite file,
a manually driven clock, hand-set prices and the paper exchange.

Nothing here touches the network.

============================================================
"""

import itertools
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

from core.clock import MockClock
from core.types import Side
from database.engine import Database
from execution_engine.adapters import PaperConfig, PaperExchangeAdapter
from execution_engine.config import ExecutionEngineConfig
from execution_engine.price_feed import StaticPriceFeed, TradeModePriceFeed
from execution_engine.types import ExchangeFill
from orchestrator.config import EngineSettings
from orchestrator.core import TradingEngine


START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================
# PRIMITIVES
# ============================================================

@pytest.fixture
def clock() -> MockClock:
    return MockClock(START)


@pytest.fixture
def price_feed() -> StaticPriceFeed:
    return StaticPriceFeed({"BTCUSDT": "100", "ETHUSDT": "2000"})


@pytest.fixture
def prices(price_feed) -> TradeModePriceFeed:
    return TradeModePriceFeed(real=price_feed)


@pytest.fixture
def paper(price_feed, clock) -> PaperExchangeAdapter:
    """Paper exchange without fees so P&L assertions stay exact."""
    return PaperExchangeAdapter(price_feed, PaperConfig(fee_rate=Decimal("0")), clock=clock)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}"


@pytest_asyncio.fixture
async def db(database_url):
    database = Database(database_url)
    await database.create_all()
    yield database
    await database.dispose()


# ============================================================
# ENGINE
# ============================================================

@pytest.fixture
def settings(database_url) -> EngineSettings:
    return EngineSettings(database_url=database_url, min_sell_notional_usd=Decimal("5"))


@pytest_asyncio.fixture
async def engine(settings, db, clock, prices, paper):
    """Engine with every collaborator injected; workers are not started."""
    trading_engine = TradingEngine(
        settings,
        db=db,
        clock=clock,
        prices=prices,
        exchanges=paper,
        config=ExecutionEngineConfig.for_testing(),
    )
    yield trading_engine
    await trading_engine.placement.stop()
    await trading_engine.scheduler.stop()


@pytest.fixture
def make_fill(clock):
    """Factory for exchange fills with unique order ids."""
    counter = itertools.count(1)

    def factory(
        side: Side = Side.BUY,
        qty="1",
        price="100",
        symbol: str = "BTCUSDT",
        account_id: int = 1,
        order_id: Optional[str] = None,
        filled_at: Optional[datetime] = None,
        fee="0",
        fee_currency: Optional[str] = "USDT",
    ) -> ExchangeFill:
        return ExchangeFill(
            exchange_account_id=account_id,
            exchange_order_id=order_id or f"ex-{next(counter)}",
            symbol=symbol,
            side=side,
            executed_qty=Decimal(str(qty)),
            avg_price=Decimal(str(price)),
            fee_amount=Decimal(str(fee)),
            fee_currency=fee_currency,
            filled_at=filled_at or clock.now(),
        )

    return factory


@pytest.fixture
def open_position(engine, make_fill):
    """Apply a BUY fill through the linker and return the position."""

    async def factory(qty="1", price="100", symbol: str = "BTCUSDT", account_id: int = 1):
        result = await engine.linker.apply_fill(
            make_fill(Side.BUY, qty=qty, price=price, symbol=symbol, account_id=account_id)
        )
        return result.position

    return factory
