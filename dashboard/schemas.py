"""
Pydantic schemas for the admin API.

Amounts travel as strings so Decimal precision survives JSON.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_jsonable(value: Any) -> Any:
    """Decimals to str, datetimes to ISO 8601, recursively."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value


def row_to_dict(row: Any) -> Dict[str, Any]:
    """ORM row as a JSON-friendly dict."""
    return to_jsonable(row.to_dict())


# =======================
# COMMON
# =======================

class BaseResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class DataResponse(BaseResponse):
    data: Any = None


class ListResponse(BaseResponse):
    data: List[Any]
    count: int


class ErrorResponse(BaseResponse):
    success: bool = False
    error_code: str
    context: Dict[str, Any] = Field(default_factory=dict)


# =======================
# 1. POSITIONS
# =======================

class BulkRiskConfigRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    position_ids: List[int] = Field(..., min_length=1)
    sl_enabled: Optional[bool] = None
    sl_pct: Optional[Decimal] = None
    tp_enabled: Optional[bool] = None
    tp_pct: Optional[Decimal] = None
    sg_enabled: Optional[bool] = None
    sg_pct: Optional[Decimal] = None
    sg_drop_pct: Optional[Decimal] = None
    tsg_enabled: Optional[bool] = None
    tsg_activation_pct: Optional[Decimal] = None
    tsg_drop_pct: Optional[Decimal] = None

    def patch_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"position_ids"}, exclude_none=True)


class ClosePositionRequest(BaseModel):
    reason: Literal["MANUAL", "SL", "TP", "SG", "TSG", "WEBHOOK"] = "MANUAL"


class LockSellRequest(BaseModel):
    locked: bool


# =======================
# 2. RECONCILIATION
# =======================

class ReconciliationWindow(BaseModel):
    exchange_account_id: int
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    hours: int = Field(24, ge=1, le=24 * 90)
    """Used when start is omitted."""

    symbols: Optional[List[str]] = None


class ImportMissingRequest(ReconciliationWindow):
    sell_position_map: Dict[str, int] = Field(default_factory=dict)
    """exchange_order_id -> position id for missing SELL fills."""

    use_suggested: bool = True


class FixOrphansRequest(BaseModel):
    execution_ids: Optional[List[int]] = None
    manual_alternatives: Dict[int, int] = Field(default_factory=dict)
    """execution id -> OPEN position id."""


class IgnoreExecutionRequest(BaseModel):
    ignored: bool = True


# =======================
# 3. SIGNALS
# =======================

class StartSignalRequest(BaseModel):
    exchange_account_id: int
    symbol: str = Field(..., min_length=1, max_length=32)
    side: Literal["BUY", "SELL"]
    qty: Optional[Decimal] = Field(None, gt=0)
    price: Optional[Decimal] = Field(None, gt=0)
    position_id: Optional[int] = None
    source: str = "api"


class AbortSignalRequest(BaseModel):
    reason: str = "Aborted by operator"


# =======================
# 4. ACCOUNTS
# =======================

class AccountDefaultsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    trade_mode: Optional[Literal["REAL", "SIMULATION"]] = None
    grouping_window_minutes: Optional[int] = Field(None, ge=0)
    min_sell_notional_usd: Optional[Decimal] = Field(None, ge=0)
    risk: Dict[str, Any] = Field(default_factory=dict)
    """Risk-exit patch (sl_enabled, sl_pct, ...)."""
