"""
Execution Engine - Binance Spot Adapter.

============================================================
PURPOSE
============================================================
REST client for Binance Spot implementing ExchangeAdapter.

ENDPOINTS:
- GET  /api/v3/myTrades    (fill history, per symbol)
- POST /api/v3/order       (MARKET, newOrderRespType=FULL)
- GET  /api/v3/openOrders

AUTHENTICATION:
- HMAC-SHA256 signature over the query string
- One credential pair per exchange account

============================================================
"""

import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from core.exceptions import ExchangeUnavailable, OrderRejected
from core.types import Side

from ..types import ExchangeFill, OpenOrder, PlacedOrder
from .base import ExchangeAdapter, aggregate_trades


logger = logging.getLogger(__name__)


# Binance error code -> internal error code
BINANCE_ERROR_MAP: Dict[int, str] = {
    -1003: "RATE_LIMITED",
    -1001: "NET_SERVER_ERROR",
    -1007: "TMO_READ",
    -1013: "MIN_NOTIONAL",
    -1021: "TMO_READ",
    -1121: "SYMBOL_NOT_TRADING",
    -2010: "INSUFFICIENT_BALANCE",
    -2014: "AUTH_FAILED",
    -2015: "AUTH_FAILED",
}

TRANSIENT_CODES = {"RATE_LIMITED", "NET_SERVER_ERROR", "TMO_READ"}


@dataclass
class ApiCredentials:
    """API key pair for one exchange account."""

    api_key: str
    api_secret: str


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


# ============================================================
# BINANCE SPOT ADAPTER
# ============================================================

class BinanceSpotAdapter(ExchangeAdapter):
    """Binance Spot REST adapter."""

    def __init__(
        self,
        credentials: Dict[int, ApiCredentials],
        base_url: str = "https://api.binance.com",
        timeout_seconds: float = 10.0,
        recv_window_ms: int = 5000,
    ):
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._recv_window_ms = recv_window_ms
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def exchange_id(self) -> str:
        return "binance_spot"

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            logger.info(f"Binance spot adapter ready ({len(self._credentials)} accounts)")

    async def disconnect(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Binance spot adapter closed")

    # --------------------------------------------------------
    # FILL HISTORY
    # --------------------------------------------------------

    async def fetch_fills(
        self,
        account_id: int,
        symbol: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[ExchangeFill]:
        if symbol is None:
            raise ValueError("Binance trade history requires a symbol")

        trades = await self._request(
            account_id,
            "GET",
            "/api/v3/myTrades",
            {"symbol": symbol, "startTime": _ms(start), "endTime": _ms(end), "limit": 1000},
        )

        fills = [
            ExchangeFill(
                exchange_account_id=account_id,
                exchange_order_id=str(t["orderId"]),
                symbol=t["symbol"],
                side=Side.BUY if t["isBuyer"] else Side.SELL,
                executed_qty=Decimal(t["qty"]),
                avg_price=Decimal(t["price"]),
                cumulative_quote_qty=Decimal(t["quoteQty"]),
                fee_amount=Decimal(t["commission"]),
                fee_currency=t["commissionAsset"],
                filled_at=_from_ms(t["time"]),
            )
            for t in trades
        ]
        return aggregate_trades(fills)

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def place_market_order(
        self,
        account_id: int,
        symbol: str,
        side: Side,
        qty: Decimal,
        client_order_id: Optional[str] = None,
    ) -> PlacedOrder:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.value,
            "type": "MARKET",
            "quantity": format(qty, "f"),
            "newOrderRespType": "FULL",
        }
        if client_order_id:
            params["newClientOrderId"] = client_order_id

        data = await self._request(account_id, "POST", "/api/v3/order", params)

        order_id = str(data["orderId"])
        executed = Decimal(data.get("executedQty", "0"))
        fills: List[ExchangeFill] = []
        if executed > 0:
            parts = data.get("fills", [])
            fee = sum((Decimal(p["commission"]) for p in parts), Decimal("0"))
            quote = Decimal(data["cummulativeQuoteQty"])
            fills.append(ExchangeFill(
                exchange_account_id=account_id,
                exchange_order_id=order_id,
                symbol=symbol,
                side=side,
                executed_qty=executed,
                avg_price=quote / executed,
                cumulative_quote_qty=quote,
                fee_amount=fee,
                fee_currency=parts[0]["commissionAsset"] if parts else None,
                status_exchange=data.get("status", "FILLED"),
                filled_at=_from_ms(data.get("transactTime", int(time.time() * 1000))),
            ))

        logger.info(f"Binance order {order_id}: {side.value} {qty} {symbol} status={data.get('status')}")
        return PlacedOrder(exchange_order_id=order_id, status=data.get("status", "NEW"), fills=fills)

    async def get_open_orders(self, account_id: int, symbol: Optional[str] = None) -> List[OpenOrder]:
        params = {"symbol": symbol} if symbol else {}
        data = await self._request(account_id, "GET", "/api/v3/openOrders", params)
        return [
            OpenOrder(
                exchange_order_id=str(o["orderId"]),
                symbol=o["symbol"],
                side=Side(o["side"]),
                qty=Decimal(o["origQty"]),
                filled_qty=Decimal(o["executedQty"]),
                price=Decimal(o["price"]) if Decimal(o["price"]) > 0 else None,
                status=o["status"],
            )
            for o in data
        ]

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _request(
        self,
        account_id: int,
        method: str,
        path: str,
        params: Dict[str, Any],
    ) -> Any:
        """Make a signed API request."""
        if account_id not in self._credentials:
            raise OrderRejected(f"No API credentials for account {account_id}", error_code="AUTH_FAILED")
        await self.connect()

        creds = self._credentials[account_id]
        params = dict(params)
        params["timestamp"] = str(int(time.time() * 1000))
        params["recvWindow"] = str(self._recv_window_ms)
        query_string = urlencode(params)
        params["signature"] = hmac.new(
            creds.api_secret.encode(),
            query_string.encode(),
            hashlib.sha256,
        ).hexdigest()

        url = f"{self._base_url}{path}"
        headers = {"X-MBX-APIKEY": creds.api_key}

        try:
            async with self._session.request(
                method,
                url,
                params=params if method == "GET" else None,
                data=params if method != "GET" else None,
                headers=headers,
            ) as response:
                data = await response.json()

                if response.status >= 500:
                    raise ExchangeUnavailable(
                        f"Binance {response.status}: {data}", error_code="NET_SERVER_ERROR",
                    )
                if response.status != 200:
                    code = BINANCE_ERROR_MAP.get(data.get("code", 0), "ORDER_REJECTED")
                    msg = data.get("msg", "Unknown error")
                    if code in TRANSIENT_CODES:
                        raise ExchangeUnavailable(msg, error_code=code)
                    raise OrderRejected(msg, error_code=code)

                return data

        except aiohttp.ClientError as e:
            raise ExchangeUnavailable(f"Network error: {e}", error_code="NET_CONNECTION_FAILED")
        except asyncio.TimeoutError:
            raise ExchangeUnavailable("Request timeout", error_code="TMO_READ")
