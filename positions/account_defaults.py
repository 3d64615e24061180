"""
Positions - Account Trading Defaults.

Per-account trade mode, grouping window, residue threshold and
the risk-exit configuration applied to newly opened positions.
Accounts without a row fall back to the engine ledger config.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.types import TradeMode
from database.engine import Database
from storage.models import AccountTradingDefaultsModel

from .risk_config import RiskConfigPatch, RiskExitConfig


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountDefaults:
    """Resolved defaults for one account."""

    exchange_account_id: int
    trade_mode: TradeMode = TradeMode.REAL
    grouping_window_minutes: int = 0
    min_sell_notional_usd: Decimal = Decimal("5")
    risk: RiskExitConfig = field(default_factory=RiskExitConfig)


class AccountDefaultsService:
    """Reads and updates account_trading_defaults rows."""

    def __init__(
        self,
        db: Database,
        default_grouping_window_minutes: int = 0,
        default_min_sell_notional_usd: Decimal = Decimal("5"),
    ):
        self._db = db
        self._default_window = default_grouping_window_minutes
        self._default_min_notional = default_min_sell_notional_usd

    def _fallback(self, account_id: int) -> AccountDefaults:
        return AccountDefaults(
            exchange_account_id=account_id,
            grouping_window_minutes=self._default_window,
            min_sell_notional_usd=self._default_min_notional,
        )

    async def get(self, account_id: int, session: Optional[AsyncSession] = None) -> AccountDefaults:
        if session is None:
            async with self._db.session_scope() as own:
                return await self.get(account_id, session=own)

        row = await session.get(AccountTradingDefaultsModel, account_id)
        if row is None:
            return self._fallback(account_id)

        return AccountDefaults(
            exchange_account_id=account_id,
            trade_mode=TradeMode(row.trade_mode),
            grouping_window_minutes=row.grouping_window_minutes,
            min_sell_notional_usd=row.min_sell_notional_usd,
            risk=RiskExitConfig.from_model(row),
        )

    async def upsert(
        self,
        account_id: int,
        trade_mode: Optional[TradeMode] = None,
        grouping_window_minutes: Optional[int] = None,
        min_sell_notional_usd: Optional[Decimal] = None,
        risk_patch: Optional[RiskConfigPatch] = None,
    ) -> AccountDefaults:
        """
        Create or update an account's defaults.

        Raises:
            InvalidRiskConfig: risk_patch yields an invalid configuration
            ValueError: negative grouping window or residue threshold
        """
        if grouping_window_minutes is not None and grouping_window_minutes < 0:
            raise ValueError("grouping_window_minutes must be >= 0")
        if min_sell_notional_usd is not None and min_sell_notional_usd < 0:
            raise ValueError("min_sell_notional_usd must be >= 0")

        async with self._db.session_scope() as session:
            row = await session.get(AccountTradingDefaultsModel, account_id)
            if row is None:
                fallback = self._fallback(account_id)
                row = AccountTradingDefaultsModel(
                    exchange_account_id=account_id,
                    trade_mode=fallback.trade_mode.value,
                    grouping_window_minutes=fallback.grouping_window_minutes,
                    min_sell_notional_usd=fallback.min_sell_notional_usd,
                    **fallback.risk.as_columns(),
                )
                session.add(row)

            if trade_mode is not None:
                row.trade_mode = trade_mode.value
            if grouping_window_minutes is not None:
                row.grouping_window_minutes = grouping_window_minutes
            if min_sell_notional_usd is not None:
                row.min_sell_notional_usd = min_sell_notional_usd
            if risk_patch is not None:
                merged = risk_patch.apply_to(RiskExitConfig.from_model(row))
                for name, value in merged.as_columns().items():
                    setattr(row, name, value)
            row.updated_at = utcnow()

        logger.info(f"Account {account_id} defaults updated")
        return await self.get(account_id)
