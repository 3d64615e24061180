"""
Reconciliation Service Tests.

============================================================
PURPOSE
============================================================
Tests for drift detection between the ledger and the exchange
order history, and for the repair commands.

TEST CATEGORIES:
- Missing order tests: detection and import
- Orphan tests: detection, automatic and manual relink, ignore
- Audit tests: ledger invariants
- Sweep tests: scheduled run and log rows

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from core.types import ExitReason, JobOrigin, JobStatus, OrphanReason, PositionStatus, Side
from execution_engine.repository import ExecutionFilter, ExecutionRepository
from execution_engine.state_machine import JobStateMachine
from execution_engine.types import TradeIntent
from reconciliation import CandidatePosition, suggest_position
from storage.models import PositionModel, ReconciliationLogModel


def window(clock):
    now = clock.now()
    return now - timedelta(hours=1), now + timedelta(minutes=1)


# ============================================================
# MISSING ORDER TESTS
# ============================================================

class TestMissingOrders:
    """Tests for detect_missing_orders() and import_missing_orders()."""

    @pytest.mark.asyncio
    async def test_detects_unknown_fills_only(self, engine, paper, make_fill, clock):
        known = make_fill(Side.BUY, qty="1")
        await engine.linker.apply_fill(known)
        paper.record_external_fill(known)
        paper.record_external_fill(make_fill(Side.BUY, qty="2", order_id="ext-buy"))

        report = await engine.reconciliation.detect_missing_orders(1, *window(clock))

        assert [m.fill.exchange_order_id for m in report.buys] == ["ext-buy"]
        assert report.sells == []
        assert report.total_missing == 1

    @pytest.mark.asyncio
    async def test_import_buy_is_idempotent(self, engine, paper, make_fill, clock):
        paper.record_external_fill(make_fill(Side.BUY, qty="2", order_id="ext-buy"))

        first = await engine.reconciliation.import_missing_orders(1, *window(clock))
        second = await engine.reconciliation.import_missing_orders(1, *window(clock))

        assert first.imported_buys == 1
        assert second.imported_buys == 0
        positions = await engine.store.list_open(1, "BTCUSDT")
        assert len(positions) == 1
        assert positions[0].qty_total == Decimal("2")

    @pytest.mark.asyncio
    async def test_sell_with_single_candidate_is_suggested(self, engine, paper, make_fill, open_position, clock):
        position = await open_position(qty="2")
        paper.record_external_fill(make_fill(Side.SELL, qty="1", price="110", order_id="ext-sell"))

        detected = await engine.reconciliation.detect_missing_orders(1, *window(clock))
        imported = await engine.reconciliation.import_missing_orders(1, *window(clock))

        assert detected.sells[0].suggested_position_id == position.id
        assert [c.position_id for c in detected.sells[0].candidates] == [position.id]
        assert imported.imported_sells == 1
        updated = await engine.store.get(position.id)
        assert updated.qty_remaining == Decimal("1")
        assert updated.realized_profit_usd == Decimal("10")

    @pytest.mark.asyncio
    async def test_ambiguous_sell_is_skipped_until_chosen(self, engine, paper, make_fill, open_position, clock):
        """Test a SELL with two possible positions is never linked to a guess."""
        first = await open_position(qty="1")
        second = await open_position(qty="1")
        paper.record_external_fill(make_fill(Side.SELL, qty="1", order_id="ext-sell"))

        skipped = await engine.reconciliation.import_missing_orders(1, *window(clock))
        assert skipped.imported_sells == 0
        assert skipped.skipped_sells[0]["reason"] == "NO_POSITION_SELECTED"
        assert sorted(skipped.skipped_sells[0]["candidates"]) == sorted([first.id, second.id])

        chosen = await engine.reconciliation.import_missing_orders(
            1, *window(clock), sell_position_map={"ext-sell": second.id},
        )
        assert chosen.imported_sells == 1
        assert (await engine.store.get(second.id)).status == PositionStatus.CLOSED.value
        assert (await engine.store.get(first.id)).status == PositionStatus.OPEN.value

    @pytest.mark.asyncio
    async def test_rejects_inverted_window(self, engine, clock):
        now = clock.now()

        with pytest.raises(ValueError):
            await engine.reconciliation.detect_missing_orders(1, now, now - timedelta(hours=1))

    def test_suggest_position_needs_exactly_one_sufficient_candidate(self, clock):
        def candidate(position_id, qty):
            return CandidatePosition(position_id, Decimal(qty), Decimal("100"), clock.now())

        assert suggest_position([candidate(1, "0.5"), candidate(2, "2")], Decimal("1")) == 2
        assert suggest_position([candidate(1, "1"), candidate(2, "2")], Decimal("1")) is None
        assert suggest_position([], Decimal("1")) is None


# ============================================================
# ORPHAN TESTS
# ============================================================

class TestOrphanedExecutions:
    """Tests for orphan detection and repair."""

    @pytest.mark.asyncio
    async def test_detect_reports_target_status(self, engine, make_fill, open_position):
        position = await open_position(qty="1")
        await engine.linker.apply_fill(make_fill(Side.SELL, qty="1"), target_position_id=position.id)
        late = await engine.linker.apply_fill(make_fill(Side.SELL, qty="1"), target_position_id=position.id)

        orphans = await engine.reconciliation.detect_orphaned_executions(1)

        assert [o.execution_id for o in orphans] == [late.execution.id]
        assert orphans[0].reason == OrphanReason.POSITION_ALREADY_CLOSED.value
        assert orphans[0].target_status == PositionStatus.CLOSED.value
        assert orphans[0].candidates == []

    @pytest.mark.asyncio
    async def test_auto_fix_relinks_to_original_target(self, engine, make_fill, open_position):
        """Test an oversized SELL links once its target has grown enough."""
        await engine.defaults.upsert(1, grouping_window_minutes=10)
        position = await open_position(qty="1")
        orphan = await engine.linker.apply_fill(make_fill(Side.SELL, qty="1.5"), target_position_id=position.id)
        await open_position(qty="1")

        report = await engine.reconciliation.fix_orphaned_executions()

        assert report.fixed == [{"execution_id": orphan.execution.id, "position_id": position.id, "mode": "AUTO"}]
        assert (await engine.store.get(position.id)).qty_remaining == Decimal("0.5")

    @pytest.mark.asyncio
    async def test_orphan_without_target_needs_alternative(self, engine, make_fill, open_position):
        position = await open_position(qty="2")
        orphan = await engine.linker.apply_fill(make_fill(Side.SELL, qty="1"))

        pending = await engine.reconciliation.fix_orphaned_executions()
        assert pending.fixed == []
        assert pending.needs_alternative[0]["execution_id"] == orphan.execution.id
        assert pending.needs_alternative[0]["candidates"][0]["position_id"] == position.id

        manual = await engine.reconciliation.fix_orphaned_executions(
            [orphan.execution.id], manual_alternatives={orphan.execution.id: position.id},
        )
        assert manual.fixed[0]["mode"] == "MANUAL"
        assert (await engine.store.get(position.id)).qty_remaining == Decimal("1")
        assert await engine.reconciliation.detect_orphaned_executions(1) == []

    @pytest.mark.asyncio
    async def test_incompatible_alternative_is_reported(self, engine, make_fill, open_position):
        other_symbol = await open_position(symbol="ETHUSDT", price="2000")
        orphan = await engine.linker.apply_fill(make_fill(Side.SELL, qty="1", symbol="BTCUSDT"))

        report = await engine.reconciliation.fix_orphaned_executions(
            manual_alternatives={orphan.execution.id: other_symbol.id},
        )

        assert report.fixed == []
        assert report.errors[0]["execution_id"] == orphan.execution.id

    @pytest.mark.asyncio
    async def test_ignored_orphans_are_hidden(self, engine, make_fill):
        orphan = await engine.linker.apply_fill(make_fill(Side.SELL, qty="1"))

        ignored = await engine.reconciliation.ignore_execution(orphan.execution.id)

        assert ignored.ignored
        assert await engine.reconciliation.detect_orphaned_executions(1) == []
        everything = await engine.reconciliation.detect_orphaned_executions(1, include_ignored=True)
        assert everything[0].ignored

    @pytest.mark.asyncio
    async def test_only_orphaned_sells_can_be_ignored(self, engine, make_fill):
        buy = await engine.linker.apply_fill(make_fill(Side.BUY, qty="1"))

        with pytest.raises(ValueError):
            await engine.reconciliation.ignore_execution(buy.execution.id)
        with pytest.raises(ValueError):
            await engine.reconciliation.ignore_execution(99999)


# ============================================================
# AUDIT TESTS
# ============================================================

class TestAudit:
    """Tests for audit_positions()."""

    @pytest.mark.asyncio
    async def test_clean_ledger_passes(self, engine, make_fill, open_position):
        position = await open_position(qty="2")
        await engine.linker.apply_fill(make_fill(Side.SELL, qty="2"), target_position_id=position.id)
        await open_position(qty="1")

        report = await engine.reconciliation.audit_positions(1)

        assert report.checked == 2
        assert report.ok

    @pytest.mark.asyncio
    async def test_quantity_drift_is_reported(self, engine, open_position):
        position = await open_position(qty="2")
        async with engine.db.session_scope() as session:
            await session.execute(
                update(PositionModel).where(PositionModel.id == position.id).values(qty_remaining=Decimal("1"))
            )

        report = await engine.reconciliation.audit_positions()

        assert not report.ok
        assert [v.rule for v in report.violations] == ["LINKED_SELLS"]
        assert report.to_dict()["violations"][0]["position_id"] == position.id


# ============================================================
# SWEEP TESTS
# ============================================================

class TestScheduledSweep:
    """Tests for run_scheduled() and the reconciliation log."""

    @pytest.mark.asyncio
    async def test_sweep_imports_for_known_accounts(self, engine, paper, make_fill):
        await engine.defaults.upsert(7)
        paper.record_external_fill(make_fill(Side.BUY, qty="1", account_id=7, order_id="ext-7"))

        summary = await engine.reconciliation.run_scheduled()

        assert summary["accounts"][7]["imported_buys"] == 1
        assert summary["orphans"] == {"fixed": [], "needs_alternative": [], "errors": []}
        assert len(await engine.store.list_open(7, "BTCUSDT")) == 1

    @pytest.mark.asyncio
    async def test_every_operation_writes_a_log_row(self, engine, clock):
        await engine.reconciliation.detect_missing_orders(1, *window(clock))
        await engine.reconciliation.audit_positions()

        async with engine.db.session_scope() as session:
            kinds = (await session.execute(
                select(ReconciliationLogModel.kind).order_by(ReconciliationLogModel.id)
            )).scalars().all()
            count = (await session.execute(select(func.count(ReconciliationLogModel.id)))).scalar_one()

        assert list(kinds) == ["MISSING_DETECT", "AUDIT"]
        assert count == 2


# ============================================================
# LATE FILL AND STALE JOB TESTS
# ============================================================

def sl_exit(position_id, qty="2"):
    return TradeIntent(
        exchange_account_id=1,
        symbol="BTCUSDT",
        side=Side.SELL,
        qty=Decimal(qty),
        origin=JobOrigin.RISK_EXIT,
        target_position_id=position_id,
        exit_reason=ExitReason.SL,
    )


async def load_job(engine, job_id):
    async with engine.db.session_scope() as session:
        return await ExecutionRepository(session).get_job(job_id)


async def pending_sell(engine, position_id):
    async with engine.db.session_scope() as session:
        return await ExecutionRepository(session).has_pending_sell(position_id)


class TestLateFills:
    """Orders accepted without fills are resolved through their trade job."""

    @pytest.mark.asyncio
    async def test_late_sell_fill_resolves_exit_job(self, engine, paper, open_position, clock):
        position = await open_position(qty="2")
        paper.hold_next_fill()
        job = await engine.placement.submit(sl_exit(position.id))
        placed = await engine.placement.process_next()
        assert placed.status == JobStatus.EXECUTING.value

        clock.advance(minutes=5)
        paper.settle_order(placed.exchange_order_id)
        summary = await engine.reconciliation.run_scheduled()

        resolved = await load_job(engine, job.id)
        closed = await engine.store.get(position.id)
        async with engine.db.session_scope() as session:
            executions = await ExecutionRepository(session).list_executions(ExecutionFilter(position_id=position.id))
        assert summary["accounts"][1]["resolved_jobs"] == [job.id]
        assert summary["accounts"][1]["imported_sells"] == 1
        assert resolved.status == JobStatus.FILLED.value
        assert resolved.filled_qty == Decimal("2")
        assert closed.status == PositionStatus.CLOSED.value
        assert closed.close_reason == ExitReason.SL.value
        assert [e.job_id for e in executions if e.side == Side.SELL.value] == [job.id]
        assert not await pending_sell(engine, position.id)

    @pytest.mark.asyncio
    async def test_detect_points_sell_at_job_target(self, engine, paper, open_position, clock):
        first = await open_position(qty="2")
        await open_position(qty="2")
        paper.hold_next_fill()
        await engine.placement.submit(sl_exit(first.id))
        placed = await engine.placement.process_next()
        paper.settle_order(placed.exchange_order_id)

        report = await engine.reconciliation.detect_missing_orders(1, *window(clock))

        assert report.sells[0].job_id == placed.id
        assert report.sells[0].suggested_position_id == first.id

    @pytest.mark.asyncio
    async def test_stale_job_with_open_order_is_kept(self, engine, paper, open_position, clock):
        position = await open_position(qty="2")
        paper.hold_next_fill()
        job = await engine.placement.submit(sl_exit(position.id))
        placed = await engine.placement.process_next()
        clock.advance(minutes=61)

        kept = await engine.reconciliation.expire_stale_jobs()
        paper.expire_order(placed.exchange_order_id)
        expired = await engine.reconciliation.expire_stale_jobs()

        failed = await load_job(engine, job.id)
        assert kept == []
        assert [e["job_id"] for e in expired] == [job.id]
        assert failed.status == JobStatus.FAILED.value
        assert failed.reason_code == "EXECUTION_TIMEOUT"
        assert not await pending_sell(engine, position.id)

    @pytest.mark.asyncio
    async def test_job_never_placed_expires(self, engine, open_position, clock):
        position = await open_position(qty="2")
        job = await engine.placement.submit(sl_exit(position.id))
        # Worker died after marking the job EXECUTING, before the exchange call
        async with engine.db.session_scope() as session:
            JobStateMachine(await ExecutionRepository(session).get_job(job.id)).mark_executing(now=clock.now())

        clock.advance(minutes=30)
        too_early = await engine.reconciliation.expire_stale_jobs()
        clock.advance(minutes=31)
        expired = await engine.reconciliation.expire_stale_jobs()

        assert too_early == []
        assert [e["job_id"] for e in expired] == [job.id]
        assert (await load_job(engine, job.id)).status == JobStatus.FAILED.value
