"""
Positions - Position Store.

============================================================
PURPOSE
============================================================
The ledger of positions and their remaining quantity.

RESPONSIBILITIES:
- Open a position from a BUY fill, or group the fill into the
  most recent OPEN position inside the grouping window
- Compare-and-decrement remaining quantity for SELL fills
- Filtered listing and bulk risk-config updates

============================================================
CRITICAL INVARIANTS
============================================================
- 0 <= qty_remaining <= qty_total at every committed state
- status == CLOSED <=> qty_remaining == 0
- open_or_group is serialized per (account, symbol); grouping
  into an existing position is a versioned compare-and-swap
  sharing the version column with decrement_remaining
- decrement_remaining is a versioned compare-and-swap, also
  serialized per position id inside the process
- A SELL larger than qty_remaining is rejected, never clamped

============================================================
SESSION OWNERSHIP
============================================================
Every mutating method accepts an optional session. Without one,
the store takes the key lock, opens its own transaction,
commits, then publishes events. With one, the caller owns both
the transaction and the key lock (see symbol_lock /
position_lock) and publishes via publish_position().

============================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import AsyncContextManager, List, Optional, Sequence

from sqlalchemy import asc, desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.events import EventBus, POSITION_CLOSED, POSITION_UPDATED
from core.exceptions import (
    InsufficientQuantity,
    LedgerError,
    PositionAlreadyClosed,
    PositionNotFound,
)
from core.locks import KeyedLock
from core.types import PositionStatus, TradeMode
from database.engine import Database
from storage.models import PositionModel

from .risk_config import RiskConfigPatch, RiskExitConfig


logger = logging.getLogger(__name__)

QUANT = Decimal("0.00000001")

MAX_CAS_ATTEMPTS = 3


def quantize(value: Decimal) -> Decimal:
    """Round to ledger precision (8 decimal places)."""
    return value.quantize(QUANT, rounding=ROUND_HALF_UP)


# ============================================================
# LIST FILTER
# ============================================================

SORTABLE_COLUMNS = {
    "created_at": PositionModel.created_at,
    "closed_at": PositionModel.closed_at,
    "symbol": PositionModel.symbol,
    "qty_remaining": PositionModel.qty_remaining,
    "realized_profit_usd": PositionModel.realized_profit_usd,
    "id": PositionModel.id,
}


@dataclass
class PositionFilter:
    """Filters for list_positions()."""

    status: Optional[PositionStatus] = None
    symbol: Optional[str] = None
    exchange_account_id: Optional[int] = None
    trade_mode: Optional[TradeMode] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    exit_enabled_only: bool = False
    sort_by: str = "created_at"
    descending: bool = True
    limit: int = 100
    offset: int = 0


class ConcurrentPositionUpdate(LedgerError):
    """Compare-and-swap lost repeatedly against other writers."""


# ============================================================
# POSITION STORE
# ============================================================

class PositionStore:
    """
    Position ledger.

    All quantity mutations go through open_or_group() and
    decrement_remaining().
    """

    def __init__(
        self,
        db: Database,
        clock: Optional[ClockProtocol] = None,
        events: Optional[EventBus] = None,
    ):
        self._db = db
        self._clock = clock or SystemClock()
        self._events = events or EventBus()
        self._locks = KeyedLock()

    @property
    def db(self) -> Database:
        return self._db

    @property
    def clock(self) -> ClockProtocol:
        return self._clock

    # --------------------------------------------------------
    # LOCKS
    # --------------------------------------------------------

    def symbol_lock(self, account_id: int, symbol: str) -> AsyncContextManager[None]:
        """Serializes grouping decisions for (account, symbol)."""
        return self._locks.hold(("symbol", account_id, symbol))

    def position_lock(self, position_id: int) -> AsyncContextManager[None]:
        """Serializes quantity and flag writes for one position."""
        return self._locks.hold(("position", position_id))

    # --------------------------------------------------------
    # OPEN OR GROUP
    # --------------------------------------------------------

    async def open_or_group(
        self,
        account_id: int,
        symbol: str,
        fill_qty: Decimal,
        fill_price: Decimal,
        grouping_window_minutes: int,
        trade_mode: TradeMode = TradeMode.REAL,
        risk_defaults: Optional[RiskExitConfig] = None,
        filled_at: Optional[datetime] = None,
        session: Optional[AsyncSession] = None,
    ) -> PositionModel:
        """
        Apply a BUY fill to the ledger.

        Groups into the most recent OPEN position of (account, symbol)
        whose group started within grouping_window_minutes of the fill;
        otherwise opens a new position.

        Returns:
            The created or grouped position
        """
        if fill_qty <= 0 or fill_price <= 0:
            raise ValueError(f"BUY fill must have positive qty and price, got {fill_qty}@{fill_price}")

        if session is None:
            async with self.symbol_lock(account_id, symbol):
                async with self._db.session_scope() as own:
                    position, _ = await self._open_or_group(
                        own, account_id, symbol, fill_qty, fill_price,
                        grouping_window_minutes, trade_mode, risk_defaults, filled_at,
                    )
            await self.publish_position(position)
            return position

        position, _ = await self._open_or_group(
            session, account_id, symbol, fill_qty, fill_price,
            grouping_window_minutes, trade_mode, risk_defaults, filled_at,
        )
        return position

    async def _open_or_group(
        self,
        session: AsyncSession,
        account_id: int,
        symbol: str,
        fill_qty: Decimal,
        fill_price: Decimal,
        grouping_window_minutes: int,
        trade_mode: TradeMode,
        risk_defaults: Optional[RiskExitConfig],
        filled_at: Optional[datetime],
    ) -> tuple:
        now = ensure_utc(filled_at) if filled_at else self._clock.now()

        if grouping_window_minutes > 0:
            window_start = now - timedelta(minutes=grouping_window_minutes)
            for attempt in range(MAX_CAS_ATTEMPTS):
                candidate = await self._group_candidate(session, account_id, symbol, window_start)
                if candidate is None:
                    break
                if await self._group_into(session, candidate, fill_qty, fill_price, now):
                    logger.info(
                        f"Grouped BUY {fill_qty}@{fill_price} into position {candidate.id} "
                        f"({symbol}, total={candidate.qty_total}, price_open={candidate.price_open})"
                    )
                    return candidate, False
                logger.warning(
                    f"Position {candidate.id} changed while grouping, retrying (attempt {attempt + 1})"
                )
            else:
                raise ConcurrentPositionUpdate(
                    f"Grouping into {symbol} on account {account_id}: "
                    f"compare-and-swap failed {MAX_CAS_ATTEMPTS} times",
                    context={"account_id": account_id, "symbol": symbol, "qty": fill_qty},
                )

        risk = (risk_defaults or RiskExitConfig()).validate()
        position = PositionModel(
            exchange_account_id=account_id,
            symbol=symbol,
            trade_mode=trade_mode.value,
            price_open=quantize(fill_price),
            qty_total=fill_qty,
            qty_remaining=fill_qty,
            status=PositionStatus.OPEN.value,
            version=0,
            created_at=now,
            updated_at=now,
            **risk.as_columns(),
        )
        session.add(position)
        await session.flush()

        logger.info(f"Opened position {position.id}: {symbol} {fill_qty}@{fill_price} account={account_id}")
        return position, True

    async def _group_candidate(
        self,
        session: AsyncSession,
        account_id: int,
        symbol: str,
        window_start: datetime,
    ) -> Optional[PositionModel]:
        """Most recent OPEN position of (account, symbol) created inside the window."""
        stmt = (
            select(PositionModel)
            .where(
                PositionModel.exchange_account_id == account_id,
                PositionModel.symbol == symbol,
                PositionModel.status == PositionStatus.OPEN.value,
                PositionModel.created_at >= window_start,
            )
            .order_by(desc(PositionModel.created_at), desc(PositionModel.id))
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return (await session.execute(stmt)).scalars().first()

    async def _group_into(
        self,
        session: AsyncSession,
        candidate: PositionModel,
        fill_qty: Decimal,
        fill_price: Decimal,
        now: datetime,
    ) -> bool:
        """
        Versioned write of a grouped BUY.

        Shares the version column with _decrement(), so a SELL
        committed between the read and this write makes it miss.
        """
        new_total = candidate.qty_total + fill_qty
        weighted = (candidate.price_open * candidate.qty_total + fill_price * fill_qty) / new_total
        result = await session.execute(
            update(PositionModel)
            .where(
                PositionModel.id == candidate.id,
                PositionModel.version == candidate.version,
                PositionModel.status == PositionStatus.OPEN.value,
            )
            .values(
                price_open=quantize(weighted),
                qty_total=new_total,
                qty_remaining=candidate.qty_remaining + fill_qty,
                is_grouped=True,
                group_fill_count=candidate.group_fill_count + 1,
                last_grouped_at=now,
                version=candidate.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await session.refresh(candidate)
        return True

    # --------------------------------------------------------
    # DECREMENT REMAINING
    # --------------------------------------------------------

    async def decrement_remaining(
        self,
        position_id: int,
        qty: Decimal,
        sell_price: Optional[Decimal] = None,
        realized_pnl: Optional[Decimal] = None,
        close_reason: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> PositionModel:
        """
        Atomically reduce qty_remaining by qty.

        Closes the position when the remainder reaches zero.

        Raises:
            PositionNotFound
            PositionAlreadyClosed
            InsufficientQuantity: qty > qty_remaining (never clamped)
        """
        if qty <= 0:
            raise ValueError(f"Decrement qty must be positive, got {qty}")

        if session is None:
            async with self.position_lock(position_id):
                async with self._db.session_scope() as own:
                    position = await self._decrement(
                        own, position_id, qty, sell_price, realized_pnl, close_reason,
                    )
            await self.publish_position(position)
            return position

        return await self._decrement(session, position_id, qty, sell_price, realized_pnl, close_reason)

    async def _decrement(
        self,
        session: AsyncSession,
        position_id: int,
        qty: Decimal,
        sell_price: Optional[Decimal],
        realized_pnl: Optional[Decimal],
        close_reason: Optional[str],
    ) -> PositionModel:
        for attempt in range(MAX_CAS_ATTEMPTS):
            position = await session.get(PositionModel, position_id, populate_existing=True)
            if position is None:
                raise PositionNotFound(position_id)
            if position.status == PositionStatus.CLOSED.value:
                raise PositionAlreadyClosed(position_id)
            if qty > position.qty_remaining:
                raise InsufficientQuantity(position_id, qty, position.qty_remaining)

            now = self._clock.now()
            new_remaining = position.qty_remaining - qty
            values = {
                "qty_remaining": new_remaining,
                "version": position.version + 1,
                "updated_at": now,
            }

            if sell_price is not None:
                sold_before = position.qty_total - position.qty_remaining
                previous_close = position.price_close or Decimal("0")
                values["price_close"] = quantize(
                    (previous_close * sold_before + sell_price * qty) / (sold_before + qty)
                )
            if realized_pnl is not None:
                values["realized_profit_usd"] = quantize(position.realized_profit_usd + realized_pnl)

            if new_remaining == 0:
                values["status"] = PositionStatus.CLOSED.value
                values["closed_at"] = now
                values["close_reason"] = close_reason

            result = await session.execute(
                update(PositionModel)
                .where(
                    PositionModel.id == position_id,
                    PositionModel.version == position.version,
                    PositionModel.status == PositionStatus.OPEN.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await session.refresh(position)
                if position.status == PositionStatus.CLOSED.value:
                    logger.info(
                        f"Closed position {position_id} ({position.symbol}) "
                        f"reason={close_reason} pnl={position.realized_profit_usd}"
                    )
                else:
                    logger.info(
                        f"Decremented position {position_id} by {qty}, "
                        f"remaining={position.qty_remaining}/{position.qty_total}"
                    )
                return position

            logger.warning(f"Position {position_id} changed concurrently, retrying (attempt {attempt + 1})")

        raise ConcurrentPositionUpdate(
            f"Position {position_id}: compare-and-swap failed {MAX_CAS_ATTEMPTS} times",
            context={"position_id": position_id, "qty": qty},
        )

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def get(self, position_id: int, session: Optional[AsyncSession] = None) -> PositionModel:
        """
        Raises:
            PositionNotFound
        """
        if session is None:
            async with self._db.session_scope() as own:
                return await self.get(position_id, session=own)

        position = await session.get(PositionModel, position_id, populate_existing=True)
        if position is None:
            raise PositionNotFound(position_id)
        return position

    async def list_positions(
        self,
        filters: Optional[PositionFilter] = None,
        session: Optional[AsyncSession] = None,
    ) -> List[PositionModel]:
        if session is None:
            async with self._db.session_scope() as own:
                return await self.list_positions(filters, session=own)

        filters = filters or PositionFilter()
        stmt = select(PositionModel)

        if filters.status is not None:
            stmt = stmt.where(PositionModel.status == filters.status.value)
        if filters.symbol:
            stmt = stmt.where(PositionModel.symbol == filters.symbol)
        if filters.exchange_account_id is not None:
            stmt = stmt.where(PositionModel.exchange_account_id == filters.exchange_account_id)
        if filters.trade_mode is not None:
            stmt = stmt.where(PositionModel.trade_mode == filters.trade_mode.value)
        if filters.created_from is not None:
            stmt = stmt.where(PositionModel.created_at >= filters.created_from)
        if filters.created_to is not None:
            stmt = stmt.where(PositionModel.created_at <= filters.created_to)
        if filters.exit_enabled_only:
            stmt = stmt.where(
                PositionModel.sl_enabled.is_(True)
                | PositionModel.tp_enabled.is_(True)
                | PositionModel.sg_enabled.is_(True)
                | PositionModel.tsg_enabled.is_(True)
            )

        column = SORTABLE_COLUMNS.get(filters.sort_by, PositionModel.created_at)
        order = desc(column) if filters.descending else asc(column)
        stmt = stmt.order_by(order, desc(PositionModel.id)).offset(filters.offset).limit(filters.limit)

        return list((await session.execute(stmt)).scalars().all())

    async def list_open(
        self,
        exchange_account_id: Optional[int] = None,
        symbol: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> List[PositionModel]:
        """All OPEN positions, oldest first."""
        return await self.list_positions(
            PositionFilter(
                status=PositionStatus.OPEN,
                exchange_account_id=exchange_account_id,
                symbol=symbol,
                sort_by="created_at",
                descending=False,
                limit=10_000,
            ),
            session=session,
        )

    # --------------------------------------------------------
    # RISK CONFIG
    # --------------------------------------------------------

    async def bulk_update_risk_config(
        self,
        position_ids: Sequence[int],
        patch: RiskConfigPatch,
    ) -> List[PositionModel]:
        """
        Apply a risk-config patch to several positions.

        All-or-nothing: every merged configuration is validated before
        the transaction commits.

        Raises:
            PositionNotFound
            InvalidRiskConfig
        """
        patch.check()
        updated: List[PositionModel] = []

        async with self._db.session_scope() as session:
            for position_id in dict.fromkeys(position_ids):
                async with self.position_lock(position_id):
                    position = await self.get(position_id, session=session)
                    merged = patch.apply_to(RiskExitConfig.from_model(position))
                    for name, value in merged.as_columns().items():
                        setattr(position, name, value)
                    position.updated_at = self._clock.now()
                    updated.append(position)
            await session.flush()

        logger.info(f"Updated risk config on {len(updated)} positions: {patch}")
        for position in updated:
            await self.publish_position(position)
        return updated

    async def set_lock_sell_by_webhook(self, position_id: int, locked: bool) -> PositionModel:
        """Toggle whether webhook SELL signals may reduce this position."""
        async with self.position_lock(position_id):
            async with self._db.session_scope() as session:
                position = await self.get(position_id, session=session)
                position.lock_sell_by_webhook = locked
                position.updated_at = self._clock.now()
        logger.info(f"Position {position_id} lock_sell_by_webhook={locked}")
        await self.publish_position(position)
        return position

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    async def publish_position(self, position: PositionModel) -> None:
        """Publish position.updated, plus position.closed when closed."""
        payload = {
            "position_id": position.id,
            "symbol": position.symbol,
            "exchange_account_id": position.exchange_account_id,
            "status": position.status,
            "qty_remaining": str(position.qty_remaining),
            "qty_total": str(position.qty_total),
        }
        await self._events.publish(POSITION_UPDATED, **payload)
        if position.status == PositionStatus.CLOSED.value:
            await self._events.publish(
                POSITION_CLOSED,
                close_reason=position.close_reason,
                realized_profit_usd=str(position.realized_profit_usd),
                **payload,
            )
