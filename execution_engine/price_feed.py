"""
Execution Engine - Live Price Feeds.

============================================================
PURPOSE
============================================================
Current price per symbol, selected by the account's trade mode.

IMPLEMENTATIONS:
- StaticPriceFeed: in-memory prices (paper trading, tests)
- BinancePriceFeed: public ticker endpoint over aiohttp
- TradeModePriceFeed: routes REAL / SIMULATION lookups

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, Optional

import aiohttp

from core.exceptions import ExchangeUnavailable
from core.types import TradeMode


logger = logging.getLogger(__name__)


# ============================================================
# PRICE FEED INTERFACE
# ============================================================

class PriceFeed(ABC):
    """Live price source."""

    @abstractmethod
    async def get_price(self, symbol: str) -> Decimal:
        """
        Raises:
            ExchangeUnavailable: price could not be fetched
        """
        pass

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        """Prices for several symbols; missing symbols are omitted."""
        prices: Dict[str, Decimal] = {}
        for symbol in set(symbols):
            try:
                prices[symbol] = await self.get_price(symbol)
            except ExchangeUnavailable as e:
                logger.warning(f"No price for {symbol}: {e.message}")
        return prices


# ============================================================
# STATIC PRICE FEED
# ============================================================

class StaticPriceFeed(PriceFeed):
    """Prices set by hand."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self._prices: Dict[str, Decimal] = {
            symbol: Decimal(str(price)) for symbol, price in (prices or {}).items()
        }

    def set_price(self, symbol: str, price) -> None:
        self._prices[symbol] = Decimal(str(price))

    async def get_price(self, symbol: str) -> Decimal:
        if symbol not in self._prices:
            raise ExchangeUnavailable(f"No price for {symbol}", error_code="NET_SERVER_ERROR")
        return self._prices[symbol]


# ============================================================
# BINANCE PRICE FEED
# ============================================================

class BinancePriceFeed(PriceFeed):
    """Spot ticker prices from the Binance public REST API."""

    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        timeout_seconds: float = 10.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def disconnect(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def get_price(self, symbol: str) -> Decimal:
        await self.connect()
        url = f"{self._base_url}/api/v3/ticker/price"
        try:
            async with self._session.get(url, params={"symbol": symbol}) as response:
                data = await response.json()
                if response.status != 200:
                    raise ExchangeUnavailable(
                        f"Ticker request failed for {symbol}: {data.get('msg', response.status)}",
                        error_code="NET_SERVER_ERROR",
                    )
                return Decimal(data["price"])
        except aiohttp.ClientError as e:
            raise ExchangeUnavailable(f"Network error fetching {symbol}: {e}")
        except asyncio.TimeoutError:
            raise ExchangeUnavailable(f"Timeout fetching {symbol}", error_code="TMO_READ")


# ============================================================
# TRADE MODE ROUTER
# ============================================================

class TradeModePriceFeed:
    """Picks the feed for an account's trade mode."""

    def __init__(self, real: PriceFeed, simulation: Optional[PriceFeed] = None):
        self._feeds = {
            TradeMode.REAL: real,
            TradeMode.SIMULATION: simulation or real,
        }

    def for_mode(self, mode: TradeMode) -> PriceFeed:
        return self._feeds[mode]

    async def get_price(self, symbol: str, mode: TradeMode = TradeMode.REAL) -> Decimal:
        return await self._feeds[mode].get_price(symbol)
