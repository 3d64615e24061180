"""
Execution Engine - Exchange Adapter Base.

============================================================
PURPOSE
============================================================
Abstract interface for exchange clients.

CAPABILITIES:
- fetch_fills: order fill history for an account and window
- place_market_order: place a market order, return its fills
- get_open_orders: orders resting on the exchange

ERROR CONTRACT:
- Transient failures raise ExchangeUnavailable (retryable)
- Permanent rejections raise OrderRejected

============================================================
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from core.types import Side

from ..types import ExchangeFill, OpenOrder, PlacedOrder


logger = logging.getLogger(__name__)


# ============================================================
# EXCHANGE ADAPTER
# ============================================================

class ExchangeAdapter(ABC):
    """
    Exchange capability consumed by the engine.

    Implementations must be safe to call concurrently from the
    order placement workers and the reconciliation service.
    """

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Exchange identifier."""
        pass

    async def connect(self) -> None:
        """Open network resources."""
        pass

    async def disconnect(self) -> None:
        """Release network resources."""
        pass

    # --------------------------------------------------------
    # FILL HISTORY
    # --------------------------------------------------------

    @abstractmethod
    async def fetch_fills(
        self,
        account_id: int,
        symbol: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[ExchangeFill]:
        """
        Get filled orders in [start, end].

        Args:
            account_id: Exchange account
            symbol: Restrict to one symbol (None = all the adapter can list)
            start: Window start (UTC)
            end: Window end (UTC)

        Returns:
            One ExchangeFill per exchange order
        """
        pass

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    @abstractmethod
    async def place_market_order(
        self,
        account_id: int,
        symbol: str,
        side: Side,
        qty: Decimal,
        client_order_id: Optional[str] = None,
    ) -> PlacedOrder:
        """
        Place a market order.

        Raises:
            ExchangeUnavailable: transient failure, safe to retry
            OrderRejected: permanent failure
        """
        pass

    @abstractmethod
    async def get_open_orders(
        self,
        account_id: int,
        symbol: Optional[str] = None,
    ) -> List[OpenOrder]:
        """Get orders still resting on the exchange."""
        pass


# ============================================================
# FILL AGGREGATION
# ============================================================

def aggregate_trades(fills: List[ExchangeFill]) -> List[ExchangeFill]:
    """
    Merge partial trades of the same order into one fill.

    Price becomes the quantity-weighted average; quote quantity and
    fees are summed. The latest trade time wins.
    """
    by_order: Dict[str, List[ExchangeFill]] = {}
    for fill in fills:
        by_order.setdefault(fill.exchange_order_id, []).append(fill)

    merged: List[ExchangeFill] = []
    for order_id, parts in by_order.items():
        if len(parts) == 1:
            merged.append(parts[0])
            continue

        qty = sum((p.executed_qty for p in parts), Decimal("0"))
        quote = sum((p.cumulative_quote_qty for p in parts), Decimal("0"))
        fees = sum((p.fee_amount for p in parts), Decimal("0"))
        first = parts[0]
        merged.append(ExchangeFill(
            exchange_account_id=first.exchange_account_id,
            exchange_order_id=order_id,
            symbol=first.symbol,
            side=first.side,
            executed_qty=qty,
            avg_price=quote / qty,
            cumulative_quote_qty=quote,
            fee_amount=fees,
            fee_currency=first.fee_currency,
            status_exchange=first.status_exchange,
            filled_at=max(p.filled_at for p in parts),
        ))

    merged.sort(key=lambda f: f.filled_at)
    return merged
