"""
Positions - Admin Commands.

============================================================
PURPOSE
============================================================
Operator commands on single positions.

COMMANDS:
- close_position: MANUAL SELL of qty_remaining
- purge_empty_duplicate: delete a position that never held
  a linked fill (empty, or a verified duplicate)
- risk_snapshot: proximity metrics at a given price
- list_monitoring: open positions under exit monitoring with
  their current price and metrics

Financial records are never deleted; a purge refuses any
position that has a linked execution.

============================================================
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select

from core.exceptions import PositionAlreadyClosed, PositionNotPurgeable, TradingException
from core.types import ExitReason, JobOrigin, PositionStatus, Side, TradeMode
from execution_engine.order_placement import OrderPlacementService
from execution_engine.price_feed import TradeModePriceFeed
from execution_engine.repository import ExecutionRepository
from execution_engine.types import TradeIntent
from risk_exit.evaluator import RiskState, proximity_metrics
from storage.models import PositionModel, TradeJobModel

from .risk_config import RiskExitConfig
from .store import PositionFilter, PositionStore


logger = logging.getLogger(__name__)


def position_to_dict(position: PositionModel) -> Dict[str, Any]:
    """JSON-friendly view of a position row."""
    data = position.to_dict()
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = str(value)
        elif hasattr(value, "isoformat"):
            data[key] = value.isoformat()
    data["qty_sold"] = str(position.qty_sold)
    return data


class PositionAdmin:
    """
    Operator commands on positions.

    Usage:
        admin = PositionAdmin(store, placement, prices)
        job = await admin.close_position(42)
    """

    def __init__(
        self,
        store: PositionStore,
        placement: OrderPlacementService,
        prices: Optional[TradeModePriceFeed] = None,
    ):
        self._store = store
        self._db = store.db
        self._placement = placement
        self._prices = prices

    # --------------------------------------------------------
    # CLOSE
    # --------------------------------------------------------

    async def close_position(self, position_id: int, reason: ExitReason = ExitReason.MANUAL) -> TradeJobModel:
        """
        Submit a MANUAL SELL for the position's qty_remaining.

        Raises:
            PositionNotFound
            PositionAlreadyClosed
            SellAlreadyPending
        """
        position = await self._store.get(position_id)
        if position.status != PositionStatus.OPEN.value:
            raise PositionAlreadyClosed(position_id)

        job = await self._placement.submit(TradeIntent(
            exchange_account_id=position.exchange_account_id,
            symbol=position.symbol,
            side=Side.SELL,
            qty=position.qty_remaining,
            origin=JobOrigin.MANUAL,
            target_position_id=position_id,
            exit_reason=reason,
        ))
        logger.info(f"Close requested for position {position_id}: job {job.id} ({reason.value})")
        return job

    async def set_lock_sell_by_webhook(self, position_id: int, locked: bool) -> PositionModel:
        return await self._store.set_lock_sell_by_webhook(position_id, locked)

    # --------------------------------------------------------
    # PURGE
    # --------------------------------------------------------

    async def purge_empty_duplicate(self, position_id: int) -> None:
        """
        Delete a position that never absorbed a fill.

        Allowed only when no execution is linked to it, no SELL job
        is in flight for it, and it is either empty
        (qty_total == qty_remaining == 0) or a verified duplicate:
        another position of the same account, symbol, qty_total and
        price_open exists.

        Raises:
            PositionNotFound
            PositionNotPurgeable
        """
        async with self._store.position_lock(position_id):
            async with self._db.session_scope() as session:
                position = await self._store.get(position_id, session=session)
                repo = ExecutionRepository(session)

                if await repo.count_linked(position_id) > 0:
                    raise PositionNotPurgeable(position_id, "position has linked executions")
                if await repo.has_pending_sell(position_id):
                    raise PositionNotPurgeable(position_id, "a SELL job is in flight")

                empty = position.qty_total == 0 and position.qty_remaining == 0
                if not empty and not await self._has_twin(session, position):
                    raise PositionNotPurgeable(position_id, "position is neither empty nor a verified duplicate")

                await session.execute(delete(PositionModel).where(PositionModel.id == position_id))

        logger.warning(f"Purged position {position_id} ({position.symbol}, empty={empty})")

    async def _has_twin(self, session, position: PositionModel) -> bool:
        stmt = select(func.count(PositionModel.id)).where(
            PositionModel.id != position.id,
            PositionModel.exchange_account_id == position.exchange_account_id,
            PositionModel.symbol == position.symbol,
            PositionModel.qty_total == position.qty_total,
            PositionModel.price_open == position.price_open,
        )
        return (await session.execute(stmt)).scalar_one() > 0

    # --------------------------------------------------------
    # MONITORING VIEW
    # --------------------------------------------------------

    def risk_snapshot(self, position: PositionModel, price: Decimal) -> Dict[str, Any]:
        """Exit configuration, evaluator state and proximity metrics at price."""
        config = RiskExitConfig.from_model(position)
        state = RiskState.from_model(position)
        return {
            "position_id": position.id,
            "price": str(price),
            "metrics": proximity_metrics(position.price_open, price, config).to_dict(),
            "state": {
                name: (str(value) if isinstance(value, Decimal) else value)
                for name, value in state.__dict__.items()
            },
        }

    async def list_monitoring(
        self,
        exchange_account_id: Optional[int] = None,
        symbol: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Open positions with an exit rule enabled, with price and proximity metrics."""
        positions = await self._store.list_positions(PositionFilter(
            status=PositionStatus.OPEN,
            exchange_account_id=exchange_account_id,
            symbol=symbol,
            exit_enabled_only=True,
            limit=10_000,
        ))

        rows = []
        for position in positions:
            snapshot = None
            if self._prices is not None:
                try:
                    price = await self._prices.get_price(position.symbol, TradeMode(position.trade_mode))
                    snapshot = self.risk_snapshot(position, price)
                except TradingException as e:
                    logger.warning(f"No price for position {position.id} ({position.symbol}): {e.message}")
            rows.append({"position": position_to_dict(position), "risk": snapshot})
        return rows
