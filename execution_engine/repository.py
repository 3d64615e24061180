"""
Execution Engine - Repository.

============================================================
PURPOSE
============================================================
Database operations for executions and trade jobs.

RESPONSIBILITIES:
- Record executions (idempotent on account + exchange order id)
- Create and load trade jobs
- Query executions with filters, orphaned SELLs, linked totals

CRITICAL REQUIREMENTS:
- The caller owns the transaction
- Executions are never deleted

============================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import asc, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.types import JobStatus, Side
from storage.models import ExecutionModel, TradeJobModel

from .types import ExchangeFill, TradeIntent


logger = logging.getLogger(__name__)


@dataclass
class ExecutionFilter:
    """Filters for list_executions()."""

    exchange_account_id: Optional[int] = None
    symbol: Optional[str] = None
    side: Optional[Side] = None
    position_id: Optional[int] = None
    orphaned_only: bool = False
    include_ignored: bool = True
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    descending: bool = True
    limit: int = 100
    offset: int = 0


# ============================================================
# EXECUTION REPOSITORY
# ============================================================

class ExecutionRepository:
    """
    Repository for execution and trade job persistence.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    # --------------------------------------------------------
    # EXECUTION OPERATIONS
    # --------------------------------------------------------

    async def get_by_exchange_order(
        self,
        exchange_account_id: int,
        exchange_order_id: str,
    ) -> Optional[ExecutionModel]:
        stmt = select(ExecutionModel).where(
            ExecutionModel.exchange_account_id == exchange_account_id,
            ExecutionModel.exchange_order_id == exchange_order_id,
        )
        return (await self._session.execute(stmt)).scalars().first()

    async def known_order_ids(
        self,
        exchange_account_id: int,
        exchange_order_ids: Iterable[str],
    ) -> set:
        """Subset of exchange_order_ids already recorded for the account."""
        ids = list(exchange_order_ids)
        if not ids:
            return set()
        stmt = select(ExecutionModel.exchange_order_id).where(
            ExecutionModel.exchange_account_id == exchange_account_id,
            ExecutionModel.exchange_order_id.in_(ids),
        )
        return set((await self._session.execute(stmt)).scalars().all())

    async def add_execution(
        self,
        fill: ExchangeFill,
        now: datetime,
        job_id: Optional[int] = None,
        position_id: Optional[int] = None,
        target_position_id: Optional[int] = None,
        orphan_reason: Optional[str] = None,
        realized_pnl: Optional[Decimal] = None,
        source: str = "LIVE",
    ) -> ExecutionModel:
        """Insert an execution row (caller checked idempotency)."""
        execution = ExecutionModel(
            job_id=job_id,
            exchange_account_id=fill.exchange_account_id,
            exchange_order_id=fill.exchange_order_id,
            symbol=fill.symbol,
            side=fill.side.value,
            executed_qty=fill.executed_qty,
            avg_price=fill.avg_price,
            cumulative_quote_qty=fill.cumulative_quote_qty,
            fee_amount=fill.fee_amount,
            fee_currency=fill.fee_currency,
            status_exchange=fill.status_exchange,
            position_id=position_id,
            target_position_id=target_position_id,
            orphan_reason=orphan_reason,
            realized_pnl=realized_pnl,
            source=source,
            created_at=fill.filled_at,
            recorded_at=now,
            linked_at=now if position_id is not None else None,
        )
        self._session.add(execution)
        await self._session.flush()
        return execution

    async def get_execution(self, execution_id: int) -> Optional[ExecutionModel]:
        return await self._session.get(ExecutionModel, execution_id, populate_existing=True)

    async def list_executions(self, filters: Optional[ExecutionFilter] = None) -> List[ExecutionModel]:
        filters = filters or ExecutionFilter()
        stmt = select(ExecutionModel)

        if filters.exchange_account_id is not None:
            stmt = stmt.where(ExecutionModel.exchange_account_id == filters.exchange_account_id)
        if filters.symbol:
            stmt = stmt.where(ExecutionModel.symbol == filters.symbol)
        if filters.side is not None:
            stmt = stmt.where(ExecutionModel.side == filters.side.value)
        if filters.position_id is not None:
            stmt = stmt.where(ExecutionModel.position_id == filters.position_id)
        if filters.orphaned_only:
            stmt = stmt.where(
                ExecutionModel.side == Side.SELL.value,
                ExecutionModel.position_id.is_(None),
            )
        if not filters.include_ignored:
            stmt = stmt.where(ExecutionModel.ignored.is_(False))
        if filters.created_from is not None:
            stmt = stmt.where(ExecutionModel.created_at >= filters.created_from)
        if filters.created_to is not None:
            stmt = stmt.where(ExecutionModel.created_at <= filters.created_to)

        order = desc(ExecutionModel.created_at) if filters.descending else asc(ExecutionModel.created_at)
        stmt = stmt.order_by(order, desc(ExecutionModel.id)).offset(filters.offset).limit(filters.limit)
        return list((await self._session.execute(stmt)).scalars().all())

    async def list_orphaned_sells(
        self,
        ids: Optional[Iterable[int]] = None,
        include_ignored: bool = False,
    ) -> List[ExecutionModel]:
        """SELL executions with no linked position, oldest first."""
        stmt = select(ExecutionModel).where(
            ExecutionModel.side == Side.SELL.value,
            ExecutionModel.position_id.is_(None),
        )
        if not include_ignored:
            stmt = stmt.where(ExecutionModel.ignored.is_(False))
        if ids is not None:
            stmt = stmt.where(ExecutionModel.id.in_(list(ids)))
        stmt = stmt.order_by(asc(ExecutionModel.created_at), asc(ExecutionModel.id))
        return list((await self._session.execute(stmt)).scalars().all())

    async def linked_sell_totals(self, position_ids: Optional[Iterable[int]] = None) -> Dict[int, Decimal]:
        """Sum of linked SELL executed_qty per position id."""
        stmt = (
            select(ExecutionModel.position_id, func.sum(ExecutionModel.executed_qty))
            .where(
                ExecutionModel.side == Side.SELL.value,
                ExecutionModel.position_id.is_not(None),
            )
            .group_by(ExecutionModel.position_id)
        )
        if position_ids is not None:
            stmt = stmt.where(ExecutionModel.position_id.in_(list(position_ids)))
        rows = (await self._session.execute(stmt)).all()
        return {position_id: Decimal(str(total)) for position_id, total in rows}

    async def count_linked(self, position_id: int) -> int:
        stmt = select(func.count(ExecutionModel.id)).where(ExecutionModel.position_id == position_id)
        return (await self._session.execute(stmt)).scalar_one()

    # --------------------------------------------------------
    # TRADE JOB OPERATIONS
    # --------------------------------------------------------

    async def create_job(self, intent: TradeIntent, now: datetime) -> TradeJobModel:
        job = TradeJobModel(
            exchange_account_id=intent.exchange_account_id,
            symbol=intent.symbol,
            side=intent.side.value,
            qty=intent.qty,
            origin=intent.origin.value,
            exit_reason=intent.exit_reason.value if intent.exit_reason else None,
            target_position_id=intent.target_position_id,
            status=JobStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()
        return job

    async def get_job(self, job_id: int) -> Optional[TradeJobModel]:
        return await self._session.get(TradeJobModel, job_id, populate_existing=True)

    async def has_pending_sell(self, position_id: int) -> bool:
        """True if a SELL job in PENDING/EXECUTING/PARTIALLY_FILLED targets the position."""
        in_flight = [s.value for s in JobStatus if s.is_in_flight()]
        stmt = select(func.count(TradeJobModel.id)).where(
            TradeJobModel.target_position_id == position_id,
            TradeJobModel.side == Side.SELL.value,
            TradeJobModel.status.in_(in_flight),
        )
        return (await self._session.execute(stmt)).scalar_one() > 0

    async def positions_with_pending_sell(self, position_ids: Iterable[int]) -> set:
        ids = list(position_ids)
        if not ids:
            return set()
        in_flight = [s.value for s in JobStatus if s.is_in_flight()]
        stmt = select(TradeJobModel.target_position_id).where(
            TradeJobModel.target_position_id.in_(ids),
            TradeJobModel.side == Side.SELL.value,
            TradeJobModel.status.in_(in_flight),
        )
        return set((await self._session.execute(stmt)).scalars().all())

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[TradeJobModel]:
        stmt = select(TradeJobModel)
        if status is not None:
            stmt = stmt.where(TradeJobModel.status == status.value)
        stmt = stmt.order_by(desc(TradeJobModel.created_at), desc(TradeJobModel.id)).limit(limit)
        return list((await self._session.execute(stmt)).scalars().all())

    async def jobs_by_exchange_order(
        self,
        exchange_account_id: int,
        exchange_order_ids: Iterable[str],
    ) -> Dict[str, TradeJobModel]:
        """Jobs whose placed order is one of exchange_order_ids, keyed by order id."""
        ids = list(exchange_order_ids)
        if not ids:
            return {}
        stmt = select(TradeJobModel).where(
            TradeJobModel.exchange_account_id == exchange_account_id,
            TradeJobModel.exchange_order_id.in_(ids),
        )
        return {job.exchange_order_id: job for job in (await self._session.execute(stmt)).scalars().all()}

    async def list_stale_jobs(self, updated_before: datetime) -> List[TradeJobModel]:
        """EXECUTING / PARTIALLY_FILLED jobs untouched since updated_before, oldest first."""
        stmt = (
            select(TradeJobModel)
            .where(
                TradeJobModel.status.in_([JobStatus.EXECUTING.value, JobStatus.PARTIALLY_FILLED.value]),
                TradeJobModel.updated_at < updated_before,
            )
            .order_by(asc(TradeJobModel.updated_at), asc(TradeJobModel.id))
        )
        return list((await self._session.execute(stmt)).scalars().all())
