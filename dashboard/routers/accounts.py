from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from core.types import Side, TradeMode
from dashboard.dependencies import get_engine
from dashboard.schemas import AccountDefaultsRequest, DataResponse, to_jsonable
from orchestrator.core import TradingEngine
from positions import AccountDefaults, RiskConfigPatch

router = APIRouter(prefix="/accounts", tags=["Account Settings"])


def _defaults_dict(defaults: AccountDefaults) -> Dict[str, Any]:
    return to_jsonable(asdict(defaults))


@router.get("/{account_id}/defaults", response_model=DataResponse)
async def get_defaults(account_id: int, engine: TradingEngine = Depends(get_engine)):
    """Trade mode, grouping window, residue threshold and risk-exit defaults."""
    return DataResponse(success=True, data=_defaults_dict(await engine.defaults.get(account_id)))


@router.put("/{account_id}/defaults", response_model=DataResponse)
async def update_defaults(
    account_id: int,
    request: AccountDefaultsRequest,
    engine: TradingEngine = Depends(get_engine),
):
    """Only new positions pick up changed defaults."""
    defaults = await engine.defaults.upsert(
        account_id,
        trade_mode=TradeMode(request.trade_mode) if request.trade_mode else None,
        grouping_window_minutes=request.grouping_window_minutes,
        min_sell_notional_usd=request.min_sell_notional_usd,
        risk_patch=RiskConfigPatch.from_dict(request.risk) if request.risk else None,
    )
    return DataResponse(success=True, data=_defaults_dict(defaults))


@router.get("/{account_id}/confirmation", response_model=DataResponse)
async def get_confirmation_configs(account_id: int, engine: TradingEngine = Depends(get_engine)):
    configs = await engine.confirmation_configs.get_all(account_id)
    return DataResponse(success=True, data={side: c.to_dict() for side, c in configs.items()})


@router.put("/{account_id}/confirmation/{side}", response_model=DataResponse)
async def update_confirmation_config(
    account_id: int,
    side: Side,
    updates: Dict[str, Any] = Body(...),
    engine: TradingEngine = Depends(get_engine),
):
    """
    Merge updates into the account's confirmation config.

    Side-specific names (rise_trigger_pct, max_fall_pct, ...) are
    accepted. Active monitors keep their snapshot.
    """
    config = await engine.confirmation_configs.update(account_id, side, updates)
    return DataResponse(success=True, data=config.to_dict())
