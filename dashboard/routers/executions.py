from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from core.types import JobStatus, Side
from dashboard.dependencies import get_engine
from dashboard.schemas import DataResponse, ListResponse, row_to_dict
from execution_engine.repository import ExecutionFilter, ExecutionRepository
from orchestrator.core import TradingEngine

router = APIRouter(prefix="/executions", tags=["Executions"])


@router.get("", response_model=ListResponse)
async def list_executions(
    exchange_account_id: Optional[int] = None,
    symbol: Optional[str] = None,
    side: Optional[Side] = None,
    position_id: Optional[int] = None,
    include_ignored: bool = True,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    descending: bool = True,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: TradingEngine = Depends(get_engine),
):
    filters = ExecutionFilter(
        exchange_account_id=exchange_account_id,
        symbol=symbol,
        side=side,
        position_id=position_id,
        include_ignored=include_ignored,
        created_from=created_from,
        created_to=created_to,
        descending=descending,
        limit=limit,
        offset=offset,
    )
    async with engine.db.session_scope() as session:
        rows = await ExecutionRepository(session).list_executions(filters)
    return ListResponse(success=True, data=[row_to_dict(r) for r in rows], count=len(rows))


@router.get("/orphaned", response_model=ListResponse)
async def list_orphaned(
    include_ignored: bool = False,
    engine: TradingEngine = Depends(get_engine),
):
    """SELL executions that did not reduce any position, oldest first."""
    async with engine.db.session_scope() as session:
        rows = await ExecutionRepository(session).list_orphaned_sells(include_ignored=include_ignored)
    return ListResponse(success=True, data=[row_to_dict(r) for r in rows], count=len(rows))


@router.get("/jobs", response_model=ListResponse)
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    engine: TradingEngine = Depends(get_engine),
):
    """Trade jobs, newest first."""
    async with engine.db.session_scope() as session:
        rows = await ExecutionRepository(session).list_jobs(status_filter, limit)
    return ListResponse(success=True, data=[row_to_dict(r) for r in rows], count=len(rows))


@router.post("/jobs/{job_id}/cancel", response_model=DataResponse)
async def cancel_job(
    job_id: int,
    engine: TradingEngine = Depends(get_engine),
):
    """Cancel a job that has not reached the exchange."""
    try:
        job = await engine.placement.cancel_job(job_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return DataResponse(success=True, message=f"Job {job_id} cancelled", data=row_to_dict(job))
