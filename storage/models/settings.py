"""
Per-Account Trading Defaults ORM Models.

TABLES:
- account_trading_defaults: trade mode, grouping window, residue
  threshold and risk-exit defaults applied to new positions
- confirmation_configs: price-action confirmation thresholds,
  one row per (account, side)

Running monitors snapshot these rows at creation; edits never
reach a state machine already in flight.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, Money, TimestampMixin


class AccountTradingDefaultsModel(Base, TimestampMixin):
    """Account-level defaults."""

    __tablename__ = "account_trading_defaults"

    exchange_account_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    trade_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="REAL")
    grouping_window_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_sell_notional_usd: Mapped[Decimal] = mapped_column(Money(), nullable=False, default=Decimal("5"))

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


class ConfirmationConfigModel(Base, TimestampMixin):
    """
    Price-action confirmation thresholds for one account side.

    trigger_pct/trigger_cycles_min hold rise_* for BUY and fall_*
    for SELL; max_adverse_pct holds max_fall_pct / max_rise_pct.
    """

    __tablename__ = "confirmation_configs"

    __table_args__ = (
        UniqueConstraint("exchange_account_id", "side", name="uq_confirmation_configs_account_side"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exchange_account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    check_interval_sec: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    lateral_tolerance_pct: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    lateral_cycles_min: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_pct: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    trigger_cycles_min: Mapped[int] = mapped_column(Integer, nullable=False)
    max_adverse_pct: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    max_monitoring_time_min: Mapped[int] = mapped_column(Integer, nullable=False)
    cooldown_after_execution_min: Mapped[int] = mapped_column(Integer, nullable=False)
