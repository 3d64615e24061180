"""
Execution and Trade Job ORM Models.

============================================================
PURPOSE
============================================================
TABLES:
- trade_jobs: intended BUY/SELL operations and their status
- executions: exchange fills, immutable once recorded

AUDIT REQUIREMENTS:
- (exchange_account_id, exchange_order_id) is unique; it is the
  idempotency anchor for live linking and reconciliation import
- Executions are never deleted to resolve a discrepancy

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, Money, TimestampMixin, UTCDateTime


# ============================================================
# TRADE JOB MODEL
# ============================================================

class TradeJobModel(Base, TimestampMixin):
    """
    Unit of intended trading action.

    Produces zero or more executions. Terminal non-success states
    carry a reason_code.
    """

    __tablename__ = "trade_jobs"

    __table_args__ = (
        Index("ix_trade_jobs_target_status", "target_position_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    exchange_account_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    qty: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    origin: Mapped[str] = mapped_column(String(32), nullable=False, default="MANUAL")
    exit_reason: Mapped[Optional[str]] = mapped_column(String(32))
    target_position_id: Mapped[Optional[int]] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING", index=True)
    reason_code: Mapped[Optional[str]] = mapped_column(String(64))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    exchange_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    filled_qty: Mapped[Decimal] = mapped_column(Money(), nullable=False, default=Decimal("0"))
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    def __repr__(self) -> str:
        return f"<TradeJob {self.id} {self.side} {self.symbol} {self.qty} {self.status}>"


# ============================================================
# EXECUTION MODEL
# ============================================================

class ExecutionModel(Base):
    """
    One exchange fill.

    A SELL is orphaned while position_id is null; orphan_reason
    records why linking failed.
    """

    __tablename__ = "executions"

    __table_args__ = (
        UniqueConstraint("exchange_account_id", "exchange_order_id", name="uq_executions_account_order"),
        Index("ix_executions_side_position", "side", "position_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    job_id: Mapped[Optional[int]] = mapped_column(ForeignKey("trade_jobs.id"), index=True)
    exchange_account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    exchange_order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    side: Mapped[str] = mapped_column(String(8), nullable=False)

    executed_qty: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    avg_price: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    cumulative_quote_qty: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Money(), nullable=False, default=Decimal("0"))
    fee_currency: Mapped[Optional[str]] = mapped_column(String(16))
    status_exchange: Mapped[str] = mapped_column(String(32), nullable=False, default="FILLED")

    # Linking
    position_id: Mapped[Optional[int]] = mapped_column(ForeignKey("positions.id"), index=True)
    target_position_id: Mapped[Optional[int]] = mapped_column(Integer)
    orphan_reason: Mapped[Optional[str]] = mapped_column(String(64))
    ignored: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    realized_pnl: Mapped[Optional[Decimal]] = mapped_column(Money())
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="LIVE")

    # Exchange fill time, then local recording time
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    linked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    @property
    def is_orphaned(self) -> bool:
        return self.side == "SELL" and self.position_id is None

    def __repr__(self) -> str:
        return (
            f"<Execution {self.id} {self.side} {self.symbol} {self.executed_qty}@{self.avg_price} "
            f"order={self.exchange_order_id} position={self.position_id}>"
        )
