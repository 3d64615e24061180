from typing import Optional

from fastapi import APIRouter, Depends, status

from core.types import Side
from dashboard.dependencies import get_confirmations
from dashboard.schemas import AbortSignalRequest, DataResponse, ListResponse, StartSignalRequest
from signal_confirmation import ConfirmationManager, TradeSignal

router = APIRouter(prefix="/signals", tags=["Signal Confirmation"])


@router.get("", response_model=ListResponse)
async def list_signals(
    active_only: bool = False,
    symbol: Optional[str] = None,
    manager: ConfirmationManager = Depends(get_confirmations),
):
    """Signal monitors, newest first."""
    records = manager.list_monitors(active_only=active_only, symbol=symbol)
    return ListResponse(success=True, data=[r.to_dict() for r in records], count=len(records))


@router.get("/summary", response_model=DataResponse)
async def summary(manager: ConfirmationManager = Depends(get_confirmations)):
    """Counts by phase plus savings and efficiency of executed monitors."""
    return DataResponse(success=True, data=manager.summary())


@router.post("", response_model=DataResponse, status_code=status.HTTP_201_CREATED)
async def start_signal(
    request: StartSignalRequest,
    manager: ConfirmationManager = Depends(get_confirmations),
):
    """
    Start confirming a trade signal.

    Rejected with 409 while a monitor for the same account, symbol
    and side is active or its cooldown has not elapsed.
    """
    record = await manager.start_monitoring(TradeSignal(
        exchange_account_id=request.exchange_account_id,
        symbol=request.symbol.upper(),
        side=Side(request.side),
        qty=request.qty,
        price=request.price,
        position_id=request.position_id,
        source=request.source,
    ))
    return DataResponse(success=True, message=f"Monitor {record.id} {record.phase.value}", data=record.to_dict())


@router.get("/{monitor_id}", response_model=DataResponse)
async def get_signal(monitor_id: str, manager: ConfirmationManager = Depends(get_confirmations)):
    return DataResponse(success=True, data=manager.get(monitor_id).to_dict())


@router.post("/{monitor_id}/abort", response_model=DataResponse)
async def abort_signal(
    monitor_id: str,
    request: Optional[AbortSignalRequest] = None,
    manager: ConfirmationManager = Depends(get_confirmations),
):
    reason = request.reason if request else "Aborted by operator"
    record = await manager.abort(monitor_id, reason)
    return DataResponse(success=True, data=record.to_dict())
