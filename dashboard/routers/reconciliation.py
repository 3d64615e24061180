from datetime import timedelta
from typing import Optional, Tuple

from fastapi import APIRouter, Depends

from core.clock import ensure_utc
from dashboard.dependencies import get_reconciliation
from dashboard.schemas import (
    DataResponse,
    FixOrphansRequest,
    IgnoreExecutionRequest,
    ImportMissingRequest,
    ListResponse,
    ReconciliationWindow,
    row_to_dict,
)
from reconciliation import ReconciliationService

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


def _window(request: ReconciliationWindow, service: ReconciliationService) -> Tuple:
    end = ensure_utc(request.end) if request.end else service.clock.now()
    start = ensure_utc(request.start) if request.start else end - timedelta(hours=request.hours)
    if start >= end:
        raise ValueError("start must be before end")
    return start, end


# =============================================================
# MISSING ORDERS
# =============================================================

@router.post("/missing/detect", response_model=DataResponse)
async def detect_missing(
    request: ReconciliationWindow,
    service: ReconciliationService = Depends(get_reconciliation),
):
    """
    Exchange fills in the window with no matching execution.

    Missing SELLs carry their candidate positions and, when exactly
    one candidate can absorb the fill, a suggested position.
    """
    start, end = _window(request, service)
    report = await service.detect_missing_orders(request.exchange_account_id, start, end, request.symbols)
    return DataResponse(success=True, message=f"{report.total_missing} missing fills", data=report.to_dict())


@router.post("/missing/import", response_model=DataResponse)
async def import_missing(
    request: ImportMissingRequest,
    service: ReconciliationService = Depends(get_reconciliation),
):
    """Import missing fills chronologically; SELLs without a chosen position are skipped."""
    start, end = _window(request, service)
    report = await service.import_missing_orders(
        request.exchange_account_id,
        start,
        end,
        sell_position_map=request.sell_position_map,
        use_suggested=request.use_suggested,
        symbols=request.symbols,
    )
    return DataResponse(success=not report.errors, data=report.to_dict())


# =============================================================
# ORPHANED EXECUTIONS
# =============================================================

@router.get("/orphaned", response_model=ListResponse)
async def detect_orphaned(
    exchange_account_id: Optional[int] = None,
    include_ignored: bool = False,
    service: ReconciliationService = Depends(get_reconciliation),
):
    orphans = await service.detect_orphaned_executions(exchange_account_id, include_ignored)
    return ListResponse(success=True, data=[o.to_dict() for o in orphans], count=len(orphans))


@router.post("/orphaned/fix", response_model=DataResponse)
async def fix_orphaned(
    request: FixOrphansRequest,
    service: ReconciliationService = Depends(get_reconciliation),
):
    """
    Relink orphaned SELLs.

    Without a manual alternative an orphan is relinked only to its
    original target; the rest come back in needs_alternative.
    """
    report = await service.fix_orphaned_executions(request.execution_ids, request.manual_alternatives)
    return DataResponse(success=not report.errors, data=report.to_dict())


@router.post("/orphaned/{execution_id}/ignore", response_model=DataResponse)
async def ignore_orphaned(
    execution_id: int,
    request: IgnoreExecutionRequest,
    service: ReconciliationService = Depends(get_reconciliation),
):
    execution = await service.ignore_execution(execution_id, request.ignored)
    return DataResponse(success=True, data=row_to_dict(execution))


# =============================================================
# AUDIT
# =============================================================

@router.get("/audit", response_model=DataResponse)
async def audit(
    exchange_account_id: Optional[int] = None,
    service: ReconciliationService = Depends(get_reconciliation),
):
    report = await service.audit_positions(exchange_account_id)
    return DataResponse(
        success=report.ok,
        message=f"{len(report.violations)} violations in {report.checked} positions",
        data=report.to_dict(),
    )
