"""
Reconciliation - Report Types.

Value objects returned by the reconciliation service and
serialized into reconciliation_logs.summary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from execution_engine.types import ExchangeFill


# ============================================================
# MISSING ORDERS
# ============================================================

@dataclass
class CandidatePosition:
    """OPEN position a missing or orphaned SELL could reduce."""

    position_id: int
    qty_remaining: Decimal
    price_open: Decimal
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "qty_remaining": str(self.qty_remaining),
            "price_open": str(self.price_open),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class MissingFill:
    """Exchange fill with no matching execution."""

    fill: ExchangeFill
    candidates: List[CandidatePosition] = field(default_factory=list)
    suggested_position_id: Optional[int] = None
    """The job's target, else the only candidate with enough qty_remaining."""

    job_id: Optional[int] = None
    """Trade job that placed this order, if the engine placed it."""

    def to_dict(self) -> Dict[str, Any]:
        data = self.fill.to_dict()
        data["candidates"] = [c.to_dict() for c in self.candidates]
        data["suggested_position_id"] = self.suggested_position_id
        data["job_id"] = self.job_id
        return data


@dataclass
class MissingOrdersReport:
    """Result of detect_missing_orders()."""

    exchange_account_id: int
    window_start: datetime
    window_end: datetime
    buys: List[MissingFill] = field(default_factory=list)
    sells: List[MissingFill] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_missing(self) -> int:
        return len(self.buys) + len(self.sells)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exchange_account_id": self.exchange_account_id,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "total_missing": self.total_missing,
            "buys": [m.to_dict() for m in self.buys],
            "sells": [m.to_dict() for m in self.sells],
            "errors": list(self.errors),
        }


@dataclass
class ImportReport:
    """Result of import_missing_orders()."""

    imported_buys: int = 0
    imported_sells: int = 0
    skipped_sells: List[Dict[str, Any]] = field(default_factory=list)
    duplicates: int = 0
    resolved_jobs: List[int] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imported_buys": self.imported_buys,
            "imported_sells": self.imported_sells,
            "skipped_sells": list(self.skipped_sells),
            "duplicates": self.duplicates,
            "resolved_jobs": list(self.resolved_jobs),
            "errors": list(self.errors),
        }


# ============================================================
# ORPHANED EXECUTIONS
# ============================================================

@dataclass
class OrphanedExecution:
    """SELL execution that did not decrement any position."""

    execution_id: int
    exchange_account_id: int
    exchange_order_id: str
    symbol: str
    executed_qty: Decimal
    avg_price: Decimal
    reason: Optional[str]
    created_at: datetime
    job_id: Optional[int] = None
    target_position_id: Optional[int] = None
    target_status: Optional[str] = None
    """Last known status of the target position (None if it does not exist)."""

    ignored: bool = False
    candidates: List[CandidatePosition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "exchange_account_id": self.exchange_account_id,
            "exchange_order_id": self.exchange_order_id,
            "symbol": self.symbol,
            "executed_qty": str(self.executed_qty),
            "avg_price": str(self.avg_price),
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "job_id": self.job_id,
            "target_position_id": self.target_position_id,
            "target_status": self.target_status,
            "ignored": self.ignored,
            "candidates": [c.to_dict() for c in self.candidates],
        }


@dataclass
class FixReport:
    """Result of fix_orphaned_executions()."""

    fixed: List[Dict[str, Any]] = field(default_factory=list)
    needs_alternative: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fixed": list(self.fixed),
            "needs_alternative": list(self.needs_alternative),
            "errors": list(self.errors),
        }


# ============================================================
# AUDIT
# ============================================================

@dataclass
class AuditViolation:
    position_id: int
    rule: str
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {"position_id": self.position_id, "rule": self.rule, "detail": self.detail}


@dataclass
class AuditReport:
    """Ledger invariant audit."""

    checked: int = 0
    violations: List[AuditViolation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "ok": self.ok,
            "violations": [v.to_dict() for v in self.violations],
        }
