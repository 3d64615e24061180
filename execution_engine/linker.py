"""
Execution Engine - Execution Linker.

============================================================
PURPOSE
============================================================
Turns a raw exchange fill into a persisted Execution and, for
SELL, the position quantity it reduces.

RULES:
- BUY: record the execution and open or group a position
- SELL with target: compare-and-decrement the target; on
  failure the execution is still recorded, unlinked, with an
  orphan reason (POSITION_ALREADY_CLOSED, QTY_EXCEEDS_REMAINING,
  POSITION_NOT_FOUND)
- SELL without target: recorded unlinked (NO_POSITION_ID)
- Re-applying a known (account, exchange_order_id) is a no-op

============================================================
CRITICAL INVARIANT
============================================================
The execution insert and the position mutation commit in the
same transaction, so a fill is never applied twice and never
lost half-way.

============================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.events import EventBus, ORDER_FILLED
from core.exceptions import (
    InsufficientQuantity,
    NoCompatiblePosition,
    PositionAlreadyClosed,
    PositionNotFound,
)
from core.types import ExitReason, OrphanReason, PositionStatus, Side
from positions.account_defaults import AccountDefaultsService
from positions.store import PositionStore, quantize
from storage.models import ExecutionModel, PositionModel

from .config import LedgerConfig
from .repository import ExecutionRepository
from .types import ExchangeFill


logger = logging.getLogger(__name__)


# ============================================================
# LINK RESULT
# ============================================================

@dataclass
class LinkResult:
    """Outcome of applying one fill."""

    execution: ExecutionModel
    position: Optional[PositionModel] = None
    duplicate: bool = False
    orphan_reason: Optional[OrphanReason] = None

    @property
    def linked(self) -> bool:
        return self.execution.position_id is not None


# ============================================================
# EXECUTION LINKER
# ============================================================

class ExecutionLinker:
    """
    Applies fills to the position ledger.
    """

    def __init__(
        self,
        store: PositionStore,
        defaults: AccountDefaultsService,
        events: Optional[EventBus] = None,
        config: Optional[LedgerConfig] = None,
    ):
        self._store = store
        self._db = store.db
        self._defaults = defaults
        self._events = events or EventBus()
        self._config = config or LedgerConfig()

    @property
    def store(self) -> PositionStore:
        return self._store

    # --------------------------------------------------------
    # P&L
    # --------------------------------------------------------

    def realized_pnl(self, fill: ExchangeFill, price_open: Decimal) -> Decimal:
        """
        P&L of a SELL fill against a position's open price.

        Quote-currency fees are deducted; base-asset fees are valued
        at the fill price; other fee currencies are ignored.
        """
        pnl = (fill.avg_price - price_open) * fill.executed_qty
        currency = (fill.fee_currency or "").upper()
        if currency in self._config.quote_currencies:
            pnl -= fill.fee_amount
        elif currency and fill.symbol.upper().startswith(currency):
            pnl -= fill.fee_amount * fill.avg_price
        return quantize(pnl)

    # --------------------------------------------------------
    # APPLY FILL
    # --------------------------------------------------------

    async def apply_fill(
        self,
        fill: ExchangeFill,
        job_id: Optional[int] = None,
        target_position_id: Optional[int] = None,
        close_reason: Optional[ExitReason] = None,
        source: str = "LIVE",
    ) -> LinkResult:
        """
        Record a fill and apply it to the ledger.

        Returns:
            LinkResult (duplicate=True if already recorded)
        """
        if fill.side is Side.BUY:
            lock = self._store.symbol_lock(fill.exchange_account_id, fill.symbol)
        elif target_position_id is not None:
            lock = self._store.position_lock(target_position_id)
        else:
            lock = self._store.symbol_lock(fill.exchange_account_id, fill.symbol)

        try:
            async with lock:
                async with self._db.session_scope() as session:
                    result = await self._apply(
                        session, fill, job_id, target_position_id, close_reason, source,
                    )
        except IntegrityError:
            # Lost an insert race on the unique order id; the other writer applied it
            logger.info(f"Fill {fill.exchange_order_id} recorded concurrently, treating as duplicate")
            async with self._db.session_scope() as session:
                existing = await ExecutionRepository(session).get_by_exchange_order(
                    fill.exchange_account_id, fill.exchange_order_id,
                )
            return LinkResult(execution=existing, duplicate=True)

        if not result.duplicate:
            if result.position is not None:
                await self._store.publish_position(result.position)
            await self._events.publish(
                ORDER_FILLED,
                execution_id=result.execution.id,
                job_id=job_id,
                exchange_order_id=fill.exchange_order_id,
                symbol=fill.symbol,
                side=fill.side.value,
                executed_qty=str(fill.executed_qty),
                avg_price=str(fill.avg_price),
                position_id=result.execution.position_id,
                orphan_reason=result.execution.orphan_reason,
            )
        return result

    async def apply_fills(self, fills: Iterable[ExchangeFill], **kwargs) -> list:
        return [await self.apply_fill(fill, **kwargs) for fill in fills]

    async def _apply(
        self,
        session: AsyncSession,
        fill: ExchangeFill,
        job_id: Optional[int],
        target_position_id: Optional[int],
        close_reason: Optional[ExitReason],
        source: str,
    ) -> LinkResult:
        repo = ExecutionRepository(session)
        now = self._store.clock.now()

        existing = await repo.get_by_exchange_order(fill.exchange_account_id, fill.exchange_order_id)
        if existing is not None:
            logger.info(
                f"Fill {fill.exchange_order_id} already recorded as execution {existing.id}, skipping"
            )
            return LinkResult(execution=existing, duplicate=True)

        if fill.side is Side.BUY:
            defaults = await self._defaults.get(fill.exchange_account_id, session=session)
            position = await self._store.open_or_group(
                fill.exchange_account_id,
                fill.symbol,
                fill.executed_qty,
                fill.avg_price,
                defaults.grouping_window_minutes,
                trade_mode=defaults.trade_mode,
                risk_defaults=defaults.risk,
                filled_at=fill.filled_at,
                session=session,
            )
            execution = await repo.add_execution(
                fill, now, job_id=job_id, position_id=position.id, source=source,
            )
            return LinkResult(execution=execution, position=position)

        return await self._apply_sell(
            session, repo, fill, job_id, target_position_id, close_reason, source,
        )

    async def _apply_sell(
        self,
        session: AsyncSession,
        repo: ExecutionRepository,
        fill: ExchangeFill,
        job_id: Optional[int],
        target_position_id: Optional[int],
        close_reason: Optional[ExitReason],
        source: str,
    ) -> LinkResult:
        now = self._store.clock.now()

        if target_position_id is None:
            execution = await repo.add_execution(
                fill, now, job_id=job_id,
                orphan_reason=OrphanReason.NO_POSITION_ID.value, source=source,
            )
            logger.warning(f"SELL {fill.exchange_order_id} has no target position, recorded as orphan")
            return LinkResult(execution=execution, orphan_reason=OrphanReason.NO_POSITION_ID)

        orphan: Optional[OrphanReason] = None
        position: Optional[PositionModel] = None
        pnl: Optional[Decimal] = None

        try:
            target = await self._store.get(target_position_id, session=session)
            if target.symbol != fill.symbol or target.exchange_account_id != fill.exchange_account_id:
                orphan = OrphanReason.SYMBOL_MISMATCH
            else:
                pnl = self.realized_pnl(fill, target.price_open)
                position = await self._store.decrement_remaining(
                    target_position_id,
                    fill.executed_qty,
                    sell_price=fill.avg_price,
                    realized_pnl=pnl,
                    close_reason=(close_reason or ExitReason.MANUAL).value,
                    session=session,
                )
        except PositionNotFound:
            orphan = OrphanReason.POSITION_NOT_FOUND
        except PositionAlreadyClosed:
            orphan = OrphanReason.POSITION_ALREADY_CLOSED
        except InsufficientQuantity as e:
            orphan = OrphanReason.QTY_EXCEEDS_REMAINING
            logger.warning(f"SELL {fill.exchange_order_id}: {e.message}")

        if orphan is not None:
            execution = await repo.add_execution(
                fill, now, job_id=job_id, target_position_id=target_position_id,
                orphan_reason=orphan.value, source=source,
            )
            logger.warning(
                f"SELL {fill.exchange_order_id} orphaned ({orphan.value}), target={target_position_id}"
            )
            return LinkResult(execution=execution, orphan_reason=orphan)

        execution = await repo.add_execution(
            fill, now, job_id=job_id, position_id=position.id,
            target_position_id=target_position_id, realized_pnl=pnl, source=source,
        )
        return LinkResult(execution=execution, position=position)

    # --------------------------------------------------------
    # RELINK EXISTING SELL
    # --------------------------------------------------------

    async def link_existing_sell(
        self,
        execution_id: int,
        position_id: int,
        close_reason: ExitReason = ExitReason.RECONCILIATION,
    ) -> LinkResult:
        """
        Link an orphaned SELL execution to an OPEN position.

        P&L is recomputed from that position's price_open.

        Raises:
            ValueError: execution missing or not an orphaned SELL
            NoCompatiblePosition: position of another account/symbol
            PositionNotFound, PositionAlreadyClosed, InsufficientQuantity
        """
        async with self._store.position_lock(position_id):
            async with self._db.session_scope() as session:
                repo = ExecutionRepository(session)
                execution = await repo.get_execution(execution_id)
                if execution is None:
                    raise ValueError(f"Execution {execution_id} not found")
                if not execution.is_orphaned:
                    raise ValueError(f"Execution {execution_id} is not an orphaned SELL")

                position = await self._store.get(position_id, session=session)
                if (
                    position.symbol != execution.symbol
                    or position.exchange_account_id != execution.exchange_account_id
                ):
                    raise NoCompatiblePosition(
                        execution.exchange_account_id,
                        execution.symbol,
                        execution.executed_qty,
                        exchange_order_id=execution.exchange_order_id,
                    )
                if position.status != PositionStatus.OPEN.value:
                    raise PositionAlreadyClosed(position_id)

                fill = ExchangeFill(
                    exchange_account_id=execution.exchange_account_id,
                    exchange_order_id=execution.exchange_order_id,
                    symbol=execution.symbol,
                    side=Side.SELL,
                    executed_qty=execution.executed_qty,
                    avg_price=execution.avg_price,
                    cumulative_quote_qty=execution.cumulative_quote_qty,
                    fee_amount=execution.fee_amount,
                    fee_currency=execution.fee_currency,
                )
                pnl = self.realized_pnl(fill, position.price_open)
                position = await self._store.decrement_remaining(
                    position_id,
                    execution.executed_qty,
                    sell_price=execution.avg_price,
                    realized_pnl=pnl,
                    close_reason=close_reason.value,
                    session=session,
                )

                execution.position_id = position_id
                execution.orphan_reason = None
                execution.realized_pnl = pnl
                execution.linked_at = self._store.clock.now()
                await session.flush()

        logger.info(f"Linked execution {execution_id} to position {position_id} (pnl={pnl})")
        await self._store.publish_position(position)
        return LinkResult(execution=execution, position=position)
