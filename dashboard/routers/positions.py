from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from core.types import ExitReason, PositionStatus, TradeMode
from dashboard.dependencies import get_admin, get_engine
from dashboard.schemas import (
    BaseResponse,
    BulkRiskConfigRequest,
    ClosePositionRequest,
    DataResponse,
    ListResponse,
    LockSellRequest,
    row_to_dict,
)
from orchestrator.core import TradingEngine
from positions import PositionFilter, RiskConfigPatch
from positions.admin import PositionAdmin, position_to_dict
from positions.store import SORTABLE_COLUMNS

router = APIRouter(prefix="/positions", tags=["Positions"])


@router.get("", response_model=ListResponse)
async def list_positions(
    status_filter: Optional[PositionStatus] = Query(None, alias="status"),
    symbol: Optional[str] = None,
    exchange_account_id: Optional[int] = None,
    trade_mode: Optional[TradeMode] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    sort_by: str = "created_at",
    descending: bool = True,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: TradingEngine = Depends(get_engine),
):
    """
    List positions.

    Filters combine with AND; sorting defaults to newest first.
    """
    if sort_by not in SORTABLE_COLUMNS:
        raise ValueError(f"sort_by must be one of {sorted(SORTABLE_COLUMNS)}")
    rows = await engine.store.list_positions(PositionFilter(
        status=status_filter,
        symbol=symbol,
        exchange_account_id=exchange_account_id,
        trade_mode=trade_mode,
        created_from=created_from,
        created_to=created_to,
        sort_by=sort_by,
        descending=descending,
        limit=limit,
        offset=offset,
    ))
    return ListResponse(success=True, data=[position_to_dict(p) for p in rows], count=len(rows))


@router.get("/monitoring", response_model=ListResponse)
async def list_monitoring(
    exchange_account_id: Optional[int] = None,
    symbol: Optional[str] = None,
    admin: PositionAdmin = Depends(get_admin),
):
    """Open positions with an exit rule enabled, with current price and proximity metrics."""
    rows = await admin.list_monitoring(exchange_account_id=exchange_account_id, symbol=symbol)
    return ListResponse(success=True, data=rows, count=len(rows))


@router.post("/bulk-risk-config", response_model=ListResponse)
async def bulk_update_risk_config(
    request: BulkRiskConfigRequest,
    engine: TradingEngine = Depends(get_engine),
):
    """
    Apply one risk-exit patch to several positions.

    All-or-nothing: an invalid merged configuration on any
    position rejects the whole request with 422.
    """
    patch = RiskConfigPatch.from_dict(request.patch_fields())
    rows = await engine.store.bulk_update_risk_config(request.position_ids, patch)
    return ListResponse(
        success=True,
        message=f"Updated {len(rows)} positions",
        data=[position_to_dict(p) for p in rows],
        count=len(rows),
    )


@router.get("/{position_id}", response_model=DataResponse)
async def get_position(
    position_id: int,
    engine: TradingEngine = Depends(get_engine),
):
    position = await engine.store.get(position_id)
    return DataResponse(success=True, data=position_to_dict(position))


@router.post("/{position_id}/close", response_model=DataResponse, status_code=status.HTTP_202_ACCEPTED)
async def close_position(
    position_id: int,
    request: Optional[ClosePositionRequest] = None,
    admin: PositionAdmin = Depends(get_admin),
):
    """Queue a SELL of the position's remaining quantity."""
    reason = ExitReason(request.reason) if request else ExitReason.MANUAL
    job = await admin.close_position(position_id, reason)
    return DataResponse(success=True, message=f"Close queued as job {job.id}", data=row_to_dict(job))


@router.post("/{position_id}/lock-sell-by-webhook", response_model=DataResponse)
async def lock_sell_by_webhook(
    position_id: int,
    request: LockSellRequest,
    admin: PositionAdmin = Depends(get_admin),
):
    position = await admin.set_lock_sell_by_webhook(position_id, request.locked)
    return DataResponse(success=True, data=position_to_dict(position))


@router.delete("/{position_id}", response_model=BaseResponse)
async def purge_position(
    position_id: int,
    admin: PositionAdmin = Depends(get_admin),
):
    """
    Delete an empty or verified-duplicate position.

    Refused with 409 when any execution is linked to it.
    """
    await admin.purge_empty_duplicate(position_id)
    return BaseResponse(success=True, message=f"Position {position_id} purged")
