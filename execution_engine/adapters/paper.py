"""
Execution Engine - Paper Exchange Adapter.

============================================================
PURPOSE
============================================================
In-memory exchange for SIMULATION accounts and tests.

BEHAVIOR:
- Market orders fill immediately at the price feed's price,
  adjusted by slippage
- Fees are charged in the quote currency
- Every fill is kept in a per-account history for fetch_fills
- Error injection for retry and failure paths
- record_external_fill() simulates fills placed outside the
  engine (for reconciliation)
- hold_next_fill() accepts orders as NEW; their fill appears in
  the history only on settle_order()

============================================================
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.exceptions import ExchangeUnavailable, OrderRejected
from core.types import Side

from ..price_feed import PriceFeed
from ..types import ExchangeFill, OpenOrder, PlacedOrder
from .base import ExchangeAdapter


logger = logging.getLogger(__name__)


# ============================================================
# PAPER CONFIGURATION
# ============================================================

@dataclass
class PaperConfig:
    """Paper exchange configuration."""

    fee_rate: Decimal = Decimal("0.001")
    """Fee as a fraction of quote quantity."""

    fee_currency: str = "USDT"
    """Fee currency."""

    slippage_bps: int = 0
    """Adverse slippage in basis points."""

    min_notional: Decimal = Decimal("0")
    """Orders below this quote value are rejected."""


# ============================================================
# PAPER EXCHANGE ADAPTER
# ============================================================

class PaperExchangeAdapter(ExchangeAdapter):
    """
    Simulated exchange.

    Injected failures are consumed in order, one per placement.
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        config: Optional[PaperConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._price_feed = price_feed
        self._config = config or PaperConfig()
        self._clock = clock or SystemClock()
        self._fills: Dict[int, List[ExchangeFill]] = {}
        self._open_orders: Dict[int, List[OpenOrder]] = {}
        self._injected: List[Exception] = []
        self._holds = 0
        self._held: Dict[str, ExchangeFill] = {}
        self.placed_orders: List[Dict] = []

    @property
    def exchange_id(self) -> str:
        return "paper"

    # --------------------------------------------------------
    # ERROR INJECTION
    # --------------------------------------------------------

    def fail_next(self, error: Exception) -> None:
        """Queue an exception for the next placement."""
        self._injected.append(error)

    def fail_next_unavailable(self, times: int = 1) -> None:
        for _ in range(times):
            self.fail_next(ExchangeUnavailable("Simulated network error"))

    def hold_next_fill(self, times: int = 1) -> None:
        """Accept the next placements as NEW without filling them."""
        self._holds += times

    def settle_order(self, exchange_order_id: str) -> ExchangeFill:
        """Fill a held order now; it leaves the open orders."""
        fill = self._release(exchange_order_id)
        fill.filled_at = self._clock.now().astimezone(timezone.utc)
        self._fills.setdefault(fill.exchange_account_id, []).append(fill)
        logger.info(f"Paper order {exchange_order_id} settled")
        return fill

    def expire_order(self, exchange_order_id: str) -> None:
        """Drop a held order unfilled, as an exchange-side cancel would."""
        self._release(exchange_order_id)
        logger.info(f"Paper order {exchange_order_id} expired")

    def _release(self, exchange_order_id: str) -> ExchangeFill:
        fill = self._held.pop(exchange_order_id)
        account_id = fill.exchange_account_id
        self._open_orders[account_id] = [
            o for o in self._open_orders.get(account_id, []) if o.exchange_order_id != exchange_order_id
        ]
        return fill

    # --------------------------------------------------------
    # FILL HISTORY
    # --------------------------------------------------------

    def record_external_fill(self, fill: ExchangeFill) -> ExchangeFill:
        """Add a fill that happened on the exchange without the engine."""
        self._fills.setdefault(fill.exchange_account_id, []).append(fill)
        return fill

    def add_open_order(self, account_id: int, order: OpenOrder) -> None:
        self._open_orders.setdefault(account_id, []).append(order)

    async def fetch_fills(
        self,
        account_id: int,
        symbol: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[ExchangeFill]:
        start, end = ensure_utc(start), ensure_utc(end)
        return [
            fill for fill in self._fills.get(account_id, [])
            if (symbol is None or fill.symbol == symbol)
            and start <= ensure_utc(fill.filled_at) <= end
        ]

    async def get_open_orders(self, account_id: int, symbol: Optional[str] = None) -> List[OpenOrder]:
        return [
            order for order in self._open_orders.get(account_id, [])
            if symbol is None or order.symbol == symbol
        ]

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
        self.placed_orders.append({
            "account_id": account_id,
            "symbol": symbol,
            "side": side,
            "qty": qty,
            "client_order_id": client_order_id,
        })

        if self._injected:
            raise self._injected.pop(0)

        price = await self._price_feed.get_price(symbol)
        slippage = price * Decimal(self._config.slippage_bps) / Decimal("10000")
        fill_price = price + slippage if side is Side.BUY else price - slippage

        quote = qty * fill_price
        if quote < self._config.min_notional:
            raise OrderRejected(
                f"Notional {quote} below minimum {self._config.min_notional}",
                error_code="MIN_NOTIONAL",
            )

        order_id = f"paper-{uuid.uuid4().hex[:16]}"
        fill = ExchangeFill(
            exchange_account_id=account_id,
            exchange_order_id=order_id,
            symbol=symbol,
            side=side,
            executed_qty=qty,
            avg_price=fill_price,
            cumulative_quote_qty=quote,
            fee_amount=quote * self._config.fee_rate,
            fee_currency=self._config.fee_currency,
            status_exchange="FILLED",
            filled_at=self._clock.now().astimezone(timezone.utc),
        )
        if self._holds:
            self._holds -= 1
            self._held[order_id] = fill
            self.add_open_order(account_id, OpenOrder(
                exchange_order_id=order_id, symbol=symbol, side=side, qty=qty,
            ))
            logger.info(f"Paper order {order_id} accepted: {side.value} {qty} {symbol}")
            return PlacedOrder(exchange_order_id=order_id, status="NEW", fills=[])

        self._fills.setdefault(account_id, []).append(fill)

        logger.info(f"Paper fill {order_id}: {side.value} {qty} {symbol} @ {fill_price}")
        return PlacedOrder(exchange_order_id=order_id, status="FILLED", fills=[fill])
