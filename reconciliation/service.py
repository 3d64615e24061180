"""
Reconciliation - Service.

============================================================
PURPOSE
============================================================
Detects and repairs drift between the internal ledger and the
exchange's order history.

OPERATIONS:
- detect_missing_orders: exchange fills with no execution,
  split into BUY (always importable) and SELL (importable only
  with a selected position)
- import_missing_orders: idempotent on exchange_order_id
- detect_orphaned_executions: SELLs that reduced no position
- fix_orphaned_executions: automatic relink to the original
  target when it can still absorb the fill, otherwise only to
  an operator-selected alternative
- expire_stale_jobs: fail jobs stuck EXECUTING / PARTIALLY_FILLED
  whose order no longer rests on the exchange
- audit_positions: ledger invariant audit

============================================================
SAFETY
============================================================
- A SELL is never linked to a guessed position
- A fill of an order the engine placed is applied through its
  trade job: same target, same exit reason, job status advanced
- Financial records are never deleted; unresolved items stay
  visible until fixed or explicitly ignored
- Per-item errors go to the report, never abort the sweep
- Every sweep writes a reconciliation_logs row

============================================================
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import select

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.events import EventBus, ORDER_CANCELLED
from core.exceptions import TradingException
from core.types import ExitReason, JobStatus, PositionStatus, Side, TradeMode
from execution_engine.adapters.base import ExchangeAdapter
from execution_engine.config import ReconciliationConfig
from execution_engine.linker import ExecutionLinker
from execution_engine.order_placement import cancelled_payload
from execution_engine.repository import ExecutionRepository
from execution_engine.state_machine import JobStateMachine
from execution_engine.types import ExchangeFill
from positions.account_defaults import AccountDefaultsService
from positions.store import PositionFilter
from storage.models import (
    AccountTradingDefaultsModel,
    ExecutionModel,
    PositionModel,
    ReconciliationLogModel,
)

from .types import (
    AuditReport,
    AuditViolation,
    CandidatePosition,
    FixReport,
    ImportReport,
    MissingFill,
    MissingOrdersReport,
    OrphanedExecution,
)


logger = logging.getLogger(__name__)

SOURCE = "RECONCILIATION"


# ============================================================
# RECONCILIATION SERVICE
# ============================================================

class ReconciliationService:
    """
    Ledger versus exchange reconciliation.

    Usage:
        service = ReconciliationService(linker, exchanges, defaults)
        report = await service.detect_missing_orders(account_id, start, end)
    """

    def __init__(
        self,
        linker: ExecutionLinker,
        exchanges: Union[ExchangeAdapter, Dict[TradeMode, ExchangeAdapter]],
        defaults: AccountDefaultsService,
        clock: Optional[ClockProtocol] = None,
        config: Optional[ReconciliationConfig] = None,
        events: Optional[EventBus] = None,
    ):
        self._linker = linker
        self._store = linker.store
        self._db = self._store.db
        if isinstance(exchanges, ExchangeAdapter):
            exchanges = {mode: exchanges for mode in TradeMode}
        self._exchanges = exchanges
        self._defaults = defaults
        self._clock = clock or SystemClock()
        self._config = config or ReconciliationConfig()
        self._events = events or EventBus()

    @property
    def clock(self) -> ClockProtocol:
        return self._clock

    # --------------------------------------------------------
    # MISSING ORDERS
    # --------------------------------------------------------

    async def detect_missing_orders(
        self,
        account_id: int,
        start: datetime,
        end: datetime,
        symbols: Optional[Iterable[str]] = None,
    ) -> MissingOrdersReport:
        """
        Exchange fills in [start, end] with no matching execution.
        """
        started = self._clock.now()
        report = await self._detect(account_id, start, end, symbols)
        await self._write_log(
            "MISSING_DETECT",
            account_id,
            started,
            {"buys": len(report.buys), "sells": len(report.sells), "errors": report.errors},
            len(report.errors),
        )
        logger.info(
            f"Missing orders for account {account_id}: "
            f"{len(report.buys)} BUY, {len(report.sells)} SELL, {len(report.errors)} errors"
        )
        return report

    async def _detect(
        self,
        account_id: int,
        start: datetime,
        end: datetime,
        symbols: Optional[Iterable[str]],
    ) -> MissingOrdersReport:
        start, end = ensure_utc(start), ensure_utc(end)
        if start > end:
            raise ValueError("start must not be after end")

        report = MissingOrdersReport(exchange_account_id=account_id, window_start=start, window_end=end)
        exchange = await self._exchange_for(account_id)

        symbol_list: List[Optional[str]] = list(symbols) if symbols else await self._known_symbols(account_id)
        if not symbol_list:
            symbol_list = [None]

        fills: List[ExchangeFill] = []
        for symbol in symbol_list:
            try:
                fills.extend(await exchange.fetch_fills(account_id, symbol, start, end))
            except (TradingException, ValueError) as e:
                logger.warning(f"Fill history unavailable for account {account_id} {symbol}: {e}")
                report.errors.append({"symbol": symbol, "error": str(e)})

        order_ids = [f.exchange_order_id for f in fills]
        async with self._db.session_scope() as session:
            repo = ExecutionRepository(session)
            known = await repo.known_order_ids(account_id, order_ids)
            jobs = {
                order_id: (job.id, job.target_position_id)
                for order_id, job in (await repo.jobs_by_exchange_order(account_id, order_ids)).items()
            }

        for fill in sorted(fills, key=lambda f: f.filled_at):
            if fill.exchange_order_id in known:
                continue
            job_id, job_target = jobs.get(fill.exchange_order_id, (None, None))
            if fill.side is Side.BUY:
                report.buys.append(MissingFill(fill=fill, job_id=job_id))
            else:
                candidates = await self._candidates(account_id, fill.symbol)
                report.sells.append(MissingFill(
                    fill=fill,
                    candidates=candidates,
                    suggested_position_id=job_target or suggest_position(candidates, fill.executed_qty),
                    job_id=job_id,
                ))
        return report

    async def import_missing_orders(
        self,
        account_id: int,
        start: datetime,
        end: datetime,
        sell_position_map: Optional[Dict[str, int]] = None,
        use_suggested: bool = True,
        symbols: Optional[Iterable[str]] = None,
    ) -> ImportReport:
        """
        Import missing fills in chronological order.

        Args:
            sell_position_map: exchange_order_id -> position id chosen
                by the operator for SELL fills
            use_suggested: link SELLs with exactly one sufficient
                candidate without an explicit choice

        Fills of orders the engine placed are linked through their
        trade job: a SELL goes to the job's target with the job's exit
        reason, and the job moves to PARTIALLY_FILLED or FILLED.

        SELLs without a chosen position are skipped and reported.
        """
        started = self._clock.now()
        sell_position_map = sell_position_map or {}
        detected = await self._detect(account_id, start, end, symbols)
        report = ImportReport(errors=list(detected.errors))

        missing = sorted(detected.buys + detected.sells, key=lambda m: m.fill.filled_at)
        for item in missing:
            fill = item.fill
            try:
                if fill.side is Side.BUY:
                    result = await self._linker.apply_fill(fill, job_id=item.job_id, source=SOURCE)
                    if result.duplicate:
                        report.duplicates += 1
                    else:
                        report.imported_buys += 1
                        await self._advance_job(item.job_id, fill, report)
                    continue

                close_reason = ExitReason.RECONCILIATION
                position_id = sell_position_map.get(fill.exchange_order_id)
                if item.job_id is not None:
                    close_reason = await self._job_close_reason(item.job_id)
                    if position_id is None:
                        position_id = item.suggested_position_id
                if position_id is None and use_suggested:
                    # Re-read: BUYs imported earlier in this batch may have added candidates
                    candidates = await self._candidates(account_id, fill.symbol)
                    position_id = suggest_position(candidates, fill.executed_qty)
                if position_id is None:
                    report.skipped_sells.append({
                        "exchange_order_id": fill.exchange_order_id,
                        "symbol": fill.symbol,
                        "executed_qty": str(fill.executed_qty),
                        "reason": "NO_POSITION_SELECTED",
                        "candidates": [c.position_id for c in item.candidates],
                    })
                    continue

                result = await self._linker.apply_fill(
                    fill,
                    job_id=item.job_id,
                    target_position_id=position_id,
                    close_reason=close_reason,
                    source=SOURCE,
                )
                if result.duplicate:
                    report.duplicates += 1
                    continue
                await self._advance_job(item.job_id, fill, report)
                if result.linked:
                    report.imported_sells += 1
                else:
                    report.errors.append({
                        "exchange_order_id": fill.exchange_order_id,
                        "error": f"Recorded unlinked: {result.orphan_reason.value}",
                    })
            except Exception as e:
                logger.error(f"Import of {fill.exchange_order_id} failed: {e}")
                report.errors.append({"exchange_order_id": fill.exchange_order_id, "error": str(e)})

        await self._write_log("MISSING_IMPORT", account_id, started, report.to_dict(), len(report.errors))
        logger.info(
            f"Imported for account {account_id}: buys={report.imported_buys} "
            f"sells={report.imported_sells} skipped={len(report.skipped_sells)} "
            f"duplicates={report.duplicates} errors={len(report.errors)}"
        )
        return report

    # --------------------------------------------------------
    # TRADE JOBS
    # --------------------------------------------------------

    async def _job_close_reason(self, job_id: int) -> ExitReason:
        async with self._db.session_scope() as session:
            job = await ExecutionRepository(session).get_job(job_id)
            return ExitReason(job.exit_reason) if job.exit_reason else ExitReason.MANUAL

    async def _advance_job(self, job_id: Optional[int], fill: ExchangeFill, report: ImportReport) -> None:
        """Count a late fill against the job that placed the order."""
        if job_id is None:
            return
        now = self._clock.now()
        async with self._db.session_scope() as session:
            job = await ExecutionRepository(session).get_job(job_id)
            job.filled_qty = (job.filled_qty or Decimal("0")) + fill.executed_qty
            job.updated_at = now

            current = JobStatus(job.status)
            if current.is_terminal():
                logger.warning(
                    f"Late fill {fill.exchange_order_id} for job {job_id} already {current.value}; "
                    f"recorded, status kept"
                )
                return
            status = JobStatus.FILLED if job.filled_qty >= job.qty else JobStatus.PARTIALLY_FILLED
            JobStateMachine(job).transition_to(status, now=now)
        report.resolved_jobs.append(job_id)

    async def expire_stale_jobs(self) -> List[Dict[str, Any]]:
        """
        Fail EXECUTING / PARTIALLY_FILLED jobs idle past stale_job_minutes.

        A job whose order still rests on the exchange is kept, as is
        one whose open orders cannot be read. Run after the missing
        order import so late fills are applied first.

        Returns:
            One entry per expired job
        """
        started = self._clock.now()
        cutoff = started - timedelta(minutes=self._config.stale_job_minutes)
        async with self._db.session_scope() as session:
            stale = await ExecutionRepository(session).list_stale_jobs(cutoff)

        expired: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for candidate in stale:
            try:
                if candidate.exchange_order_id and await self._order_is_open(candidate):
                    continue
                async with self._db.session_scope() as session:
                    job = await ExecutionRepository(session).get_job(candidate.id)
                    if not JobStatus(job.status).is_in_flight():
                        continue
                    JobStateMachine(job).mark_failed(
                        "EXECUTION_TIMEOUT",
                        f"No fill within {self._config.stale_job_minutes} minutes",
                        now=self._clock.now(),
                    )
                expired.append({
                    "job_id": job.id,
                    "exchange_order_id": job.exchange_order_id,
                    "filled_qty": str(job.filled_qty),
                    "target_position_id": job.target_position_id,
                })
                await self._events.publish(ORDER_CANCELLED, **cancelled_payload(job))
            except Exception as e:
                logger.error(f"Expiring job {candidate.id} failed: {e}")
                errors.append({"job_id": candidate.id, "error": str(e)})

        await self._write_log(
            "STALE_JOBS", None, started, {"expired": expired, "errors": errors}, len(errors),
        )
        if expired:
            logger.warning(f"Expired {len(expired)} stale trade jobs")
        return expired

    async def _order_is_open(self, job) -> bool:
        try:
            exchange = await self._exchange_for(job.exchange_account_id)
            orders = await exchange.get_open_orders(job.exchange_account_id, job.symbol)
        except (TradingException, ValueError) as e:
            logger.warning(f"Open orders unavailable for job {job.id}, keeping it: {e}")
            return True
        return any(order.exchange_order_id == job.exchange_order_id for order in orders)

    # --------------------------------------------------------
    # ORPHANED EXECUTIONS
    # --------------------------------------------------------

    async def detect_orphaned_executions(
        self,
        account_id: Optional[int] = None,
        include_ignored: bool = False,
    ) -> List[OrphanedExecution]:
        """SELL executions with no linked position, oldest first."""
        started = self._clock.now()
        orphans: List[OrphanedExecution] = []

        async with self._db.session_scope() as session:
            executions = await ExecutionRepository(session).list_orphaned_sells(include_ignored=include_ignored)
            for execution in executions:
                if account_id is not None and execution.exchange_account_id != account_id:
                    continue
                target_status = None
                if execution.target_position_id is not None:
                    target = await session.get(PositionModel, execution.target_position_id)
                    target_status = target.status if target else None
                orphans.append(OrphanedExecution(
                    execution_id=execution.id,
                    exchange_account_id=execution.exchange_account_id,
                    exchange_order_id=execution.exchange_order_id,
                    symbol=execution.symbol,
                    executed_qty=execution.executed_qty,
                    avg_price=execution.avg_price,
                    reason=execution.orphan_reason,
                    created_at=execution.created_at,
                    job_id=execution.job_id,
                    target_position_id=execution.target_position_id,
                    target_status=target_status,
                    ignored=execution.ignored,
                ))

        for orphan in orphans:
            orphan.candidates = await self._candidates(orphan.exchange_account_id, orphan.symbol)

        await self._write_log("ORPHAN_DETECT", account_id, started, {"orphaned": len(orphans)}, 0)
        return orphans

    async def fix_orphaned_executions(
        self,
        execution_ids: Optional[Iterable[int]] = None,
        manual_alternatives: Optional[Dict[int, int]] = None,
    ) -> FixReport:
        """
        Relink orphaned SELL executions.

        Args:
            execution_ids: orphans to fix (all non-ignored when None)
            manual_alternatives: execution id -> OPEN position id of the
                same account and symbol, chosen by the operator

        Without an alternative, an orphan is relinked only to its
        original target, and only if that target is still OPEN with
        enough qty_remaining. Anything else is returned in
        needs_alternative.
        """
        started = self._clock.now()
        manual_alternatives = manual_alternatives or {}
        report = FixReport()

        async with self._db.session_scope() as session:
            orphans = await ExecutionRepository(session).list_orphaned_sells(
                ids=list(execution_ids) if execution_ids is not None else None,
            )

        for execution in orphans:
            try:
                alternative = manual_alternatives.get(execution.id)
                if alternative is not None:
                    await self._linker.link_existing_sell(execution.id, alternative)
                    report.fixed.append({"execution_id": execution.id, "position_id": alternative, "mode": "MANUAL"})
                    continue

                target_id = await self._auto_target(execution)
                if target_id is None:
                    candidates = await self._candidates(execution.exchange_account_id, execution.symbol)
                    report.needs_alternative.append({
                        "execution_id": execution.id,
                        "symbol": execution.symbol,
                        "executed_qty": str(execution.executed_qty),
                        "reason": execution.orphan_reason,
                        "candidates": [c.to_dict() for c in candidates],
                    })
                    continue

                await self._linker.link_existing_sell(execution.id, target_id)
                report.fixed.append({"execution_id": execution.id, "position_id": target_id, "mode": "AUTO"})
            except Exception as e:
                logger.error(f"Fixing orphaned execution {execution.id} failed: {e}")
                report.errors.append({"execution_id": execution.id, "error": str(e)})

        await self._write_log(
            "ORPHAN_FIX",
            None,
            started,
            {
                "fixed": len(report.fixed),
                "needs_alternative": len(report.needs_alternative),
                "errors": report.errors,
            },
            len(report.errors),
        )
        logger.info(
            f"Orphan fix: fixed={len(report.fixed)} "
            f"needs_alternative={len(report.needs_alternative)} errors={len(report.errors)}"
        )
        return report

    async def _auto_target(self, execution: ExecutionModel) -> Optional[int]:
        """Original target if it can still absorb the execution."""
        if execution.target_position_id is None:
            return None
        async with self._db.session_scope() as session:
            target = await session.get(PositionModel, execution.target_position_id)
            if (
                target is not None
                and target.status == PositionStatus.OPEN.value
                and target.symbol == execution.symbol
                and target.exchange_account_id == execution.exchange_account_id
                and target.qty_remaining >= execution.executed_qty
            ):
                return target.id
        return None

    async def ignore_execution(self, execution_id: int, ignored: bool = True) -> ExecutionModel:
        """
        Mark an orphaned execution as reviewed and ignored.

        The row is kept; ignored orphans are hidden from the default
        orphan listing.

        Raises:
            ValueError: execution missing or not an orphaned SELL
        """
        async with self._db.session_scope() as session:
            execution = await ExecutionRepository(session).get_execution(execution_id)
            if execution is None:
                raise ValueError(f"Execution {execution_id} not found")
            if not execution.is_orphaned:
                raise ValueError(f"Execution {execution_id} is not an orphaned SELL")
            execution.ignored = ignored
        logger.info(f"Execution {execution_id} ignored={ignored}")
        return execution

    # --------------------------------------------------------
    # AUDIT
    # --------------------------------------------------------

    async def audit_positions(self, account_id: Optional[int] = None) -> AuditReport:
        """
        Check ledger invariants on every position.

        RULES:
        - QTY_BOUNDS: 0 <= qty_remaining <= qty_total
        - STATUS_QTY: CLOSED <=> qty_remaining == 0
        - LINKED_SELLS: sum(linked SELL qty) == qty_total - qty_remaining
        """
        started = self._clock.now()
        report = AuditReport()

        positions = await self._store.list_positions(
            PositionFilter(exchange_account_id=account_id, sort_by="id", descending=False, limit=1_000_000)
        )
        async with self._db.session_scope() as session:
            linked = await ExecutionRepository(session).linked_sell_totals([p.id for p in positions])

        for position in positions:
            report.checked += 1
            remaining, total = position.qty_remaining, position.qty_total

            if remaining < 0 or remaining > total:
                report.violations.append(AuditViolation(
                    position.id, "QTY_BOUNDS", f"qty_remaining={remaining} qty_total={total}",
                ))
            closed = position.status == PositionStatus.CLOSED.value
            if closed != (remaining == 0):
                report.violations.append(AuditViolation(
                    position.id, "STATUS_QTY", f"status={position.status} qty_remaining={remaining}",
                ))
            sold = linked.get(position.id, Decimal("0"))
            if sold != total - remaining:
                report.violations.append(AuditViolation(
                    position.id, "LINKED_SELLS", f"linked={sold} expected={total - remaining}",
                ))

        await self._write_log(
            "AUDIT", account_id, started, report.to_dict(), len(report.violations),
        )
        if report.violations:
            logger.warning(f"Ledger audit found {len(report.violations)} violations in {report.checked} positions")
        return report

    # --------------------------------------------------------
    # SCHEDULED SWEEP
    # --------------------------------------------------------

    async def run_scheduled(self) -> Dict[str, Any]:
        """
        Periodic sweep: import missing fills inside the lookback
        window for every known account, expire stale jobs, then
        auto-fix orphans.
        """
        end = self._clock.now()
        start = end - timedelta(hours=self._config.lookback_hours)
        summary: Dict[str, Any] = {"accounts": {}, "stale_jobs": [], "orphans": None}

        for account_id in await self._known_accounts():
            try:
                summary["accounts"][account_id] = (
                    await self.import_missing_orders(account_id, start, end)
                ).to_dict()
            except Exception as e:
                logger.error(f"Scheduled reconciliation failed for account {account_id}: {e}")
                summary["accounts"][account_id] = {"error": str(e)}

        summary["stale_jobs"] = await self.expire_stale_jobs()
        if self._config.auto_fix_orphans:
            summary["orphans"] = (await self.fix_orphaned_executions()).to_dict()
        return summary

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _exchange_for(self, account_id: int) -> ExchangeAdapter:
        defaults = await self._defaults.get(account_id)
        return self._exchanges[defaults.trade_mode]

    async def _candidates(self, account_id: int, symbol: str) -> List[CandidatePosition]:
        return [
            CandidatePosition(
                position_id=p.id,
                qty_remaining=p.qty_remaining,
                price_open=p.price_open,
                created_at=p.created_at,
            )
            for p in await self._store.list_open(account_id, symbol)
            if p.qty_remaining > 0
        ]

    async def _known_symbols(self, account_id: int) -> List[Optional[str]]:
        async with self._db.session_scope() as session:
            from_positions = (await session.execute(
                select(PositionModel.symbol).where(PositionModel.exchange_account_id == account_id).distinct()
            )).scalars().all()
            from_executions = (await session.execute(
                select(ExecutionModel.symbol).where(ExecutionModel.exchange_account_id == account_id).distinct()
            )).scalars().all()
        return sorted(set(from_positions) | set(from_executions))

    async def _known_accounts(self) -> List[int]:
        async with self._db.session_scope() as session:
            from_defaults = (await session.execute(
                select(AccountTradingDefaultsModel.exchange_account_id)
            )).scalars().all()
            from_positions = (await session.execute(
                select(PositionModel.exchange_account_id).distinct()
            )).scalars().all()
        return sorted(set(from_defaults) | set(from_positions))

    async def _write_log(
        self,
        kind: str,
        account_id: Optional[int],
        started_at: datetime,
        summary: Dict[str, Any],
        error_count: int,
    ) -> None:
        async with self._db.session_scope() as session:
            session.add(ReconciliationLogModel(
                kind=kind,
                exchange_account_id=account_id,
                started_at=started_at,
                finished_at=self._clock.now(),
                error_count=error_count,
                summary=summary,
            ))


def suggest_position(candidates: List[CandidatePosition], qty: Decimal) -> Optional[int]:
    """The only candidate with qty_remaining >= qty, else None."""
    sufficient = [c for c in candidates if c.qty_remaining >= qty]
    return sufficient[0].position_id if len(sufficient) == 1 else None
