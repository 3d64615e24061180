"""
Execution Engine - Types.

============================================================
PURPOSE
============================================================
Value objects exchanged between the exchange adapters, the
order placement queue and the execution linker.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from core.types import ExitReason, JobOrigin, Side


# ============================================================
# EXCHANGE FILL
# ============================================================

@dataclass
class ExchangeFill:
    """
    One order fill as reported by the exchange.

    Multiple trades of the same order are aggregated into a single
    fill (volume-weighted price, summed fees).
    """

    exchange_account_id: int
    exchange_order_id: str
    symbol: str
    side: Side
    executed_qty: Decimal
    avg_price: Decimal
    cumulative_quote_qty: Optional[Decimal] = None
    fee_amount: Decimal = Decimal("0")
    fee_currency: Optional[str] = None
    status_exchange: str = "FILLED"
    filled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.cumulative_quote_qty is None:
            self.cumulative_quote_qty = self.executed_qty * self.avg_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exchange_account_id": self.exchange_account_id,
            "exchange_order_id": self.exchange_order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "executed_qty": str(self.executed_qty),
            "avg_price": str(self.avg_price),
            "cumulative_quote_qty": str(self.cumulative_quote_qty),
            "fee_amount": str(self.fee_amount),
            "fee_currency": self.fee_currency,
            "status_exchange": self.status_exchange,
            "filled_at": self.filled_at.isoformat(),
        }


# ============================================================
# OPEN ORDER
# ============================================================

@dataclass
class OpenOrder:
    """Order resting on the exchange."""

    exchange_order_id: str
    symbol: str
    side: Side
    qty: Decimal
    filled_qty: Decimal = Decimal("0")
    price: Optional[Decimal] = None
    status: str = "NEW"


# ============================================================
# PLACED ORDER
# ============================================================

@dataclass
class PlacedOrder:
    """Result of a market order placement."""

    exchange_order_id: str
    status: str
    fills: list = field(default_factory=list)
    """ExchangeFill list (may be empty if the fill arrives later)."""


# ============================================================
# TRADE INTENT
# ============================================================

@dataclass
class TradeIntent:
    """
    Request to place a market order.

    Produced by the risk-exit monitor, the confirmation manager and
    admin commands; consumed by the order placement service.
    """

    exchange_account_id: int
    symbol: str
    side: Side
    qty: Decimal
    origin: JobOrigin
    target_position_id: Optional[int] = None
    """Position reduced by a SELL. None for BUY."""

    exit_reason: Optional[ExitReason] = None
    reference_price: Optional[Decimal] = None
    """Price observed when the intent was produced."""

    def __post_init__(self):
        if self.qty <= 0:
            raise ValueError(f"Trade intent qty must be positive, got {self.qty}")
