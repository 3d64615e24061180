"""
Position Ledger ORM Model.

============================================================
PURPOSE
============================================================
One directional (long) holding of a symbol on one exchange
account, opened by BUY fills and reduced by linked SELL fills.

============================================================
INVARIANTS
============================================================
- 0 <= qty_remaining <= qty_total
- status == CLOSED <=> qty_remaining == 0
- version increments on every quantity write (optimistic lock)
- Rows are never deleted by normal closing

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, Money, TimestampMixin, UTCDateTime


class PositionModel(Base, TimestampMixin):
    """Position ledger row with its risk-exit configuration and state."""

    __tablename__ = "positions"

    __table_args__ = (
        Index("ix_positions_account_symbol_status", "exchange_account_id", "symbol", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity
    exchange_account_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    trade_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="REAL")

    # Quantities
    price_open: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    qty_total: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    qty_remaining: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN", index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Grouping
    is_grouped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    group_fill_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_grouped_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Closing
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    close_reason: Mapped[Optional[str]] = mapped_column(String(32))
    price_close: Mapped[Optional[Decimal]] = mapped_column(Money())
    realized_profit_usd: Mapped[Decimal] = mapped_column(Money(), nullable=False, default=Decimal("0"))

    # Risk-exit configuration
    sl_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sl_pct: Mapped[Optional[Decimal]] = mapped_column(Money())
    tp_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tp_pct: Mapped[Optional[Decimal]] = mapped_column(Money())
    sg_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sg_pct: Mapped[Optional[Decimal]] = mapped_column(Money())
    sg_drop_pct: Mapped[Optional[Decimal]] = mapped_column(Money())
    tsg_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tsg_activation_pct: Mapped[Optional[Decimal]] = mapped_column(Money())
    tsg_drop_pct: Mapped[Optional[Decimal]] = mapped_column(Money())
    lock_sell_by_webhook: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Risk-exit state (monotonic while OPEN)
    peak_price: Mapped[Optional[Decimal]] = mapped_column(Money())
    sg_reference_price: Mapped[Optional[Decimal]] = mapped_column(Money())
    sl_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tp_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sg_activated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sg_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tsg_activated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tsg_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @property
    def is_open(self) -> bool:
        return self.status == "OPEN"

    @property
    def qty_sold(self) -> Decimal:
        return self.qty_total - self.qty_remaining

    @property
    def has_exit_enabled(self) -> bool:
        return self.sl_enabled or self.tp_enabled or self.sg_enabled or self.tsg_enabled

    def __repr__(self) -> str:
        return (
            f"<Position {self.id} {self.symbol} acct={self.exchange_account_id} "
            f"{self.qty_remaining}/{self.qty_total} {self.status}>"
        )
