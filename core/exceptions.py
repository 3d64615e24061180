"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception hierarchy for the trading engine.

- Every error carries severity, context and recoverability
- The API layer maps these types to HTTP status codes
- Reconciliation and monitors serialize them into reports

============================================================
EXCEPTION HIERARCHY
============================================================
TradingException (base)
├── ConfigurationError
│   └── InvalidRiskConfig
├── LedgerError
│   ├── PositionNotFound
│   ├── InsufficientQuantity
│   ├── PositionAlreadyClosed
│   ├── NoCompatiblePosition
│   ├── DuplicateExchangeOrder
│   └── PositionNotPurgeable
├── ExecutionError
│   ├── ExchangeUnavailable
│   ├── OrderRejected
│   ├── InvalidStateTransition
│   └── SellAlreadyPending
├── SignalError
│   ├── MonitorAlreadyActive
│   ├── CooldownActive
│   └── MonitorNotFound
└── SchedulerError
    └── SchedulerJobNotFound

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, may impact capital."""

    CRITICAL = "critical"
    """Ledger integrity at risk, requires immediate action."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Caller can handle the error and continue."""

    TRANSIENT = "transient"
    """Temporary error, retry may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires operator intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class TradingException(Exception):
    """
    Base exception for all trading engine errors.

    All exceptions carry:
    - severity: for alerting
    - context: for debugging and reports
    - recoverable: for error handling decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_recoverable: bool = True
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.recoverable = recoverable if recoverable is not None else self.default_recoverable
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_transient(self) -> bool:
        """Check if a retry may succeed."""
        return self.classification == ErrorClassification.TRANSIENT

    @property
    def code(self) -> str:
        """Stable machine-readable code (class name in upper snake case)."""
        name = type(self).__name__
        return "".join(
            f"_{c}" if c.isupper() and i else c for i, c in enumerate(name)
        ).upper()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "classification": self.classification.value,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(TradingException):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_recoverable = False
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context, **kwargs)


class InvalidRiskConfig(ConfigurationError):
    """
    Risk-exit configuration rejected at configuration time.

    Raised for TSG and SG enabled together, thresholds that are not
    positive finite numbers, or toggles that are not booleans.
    """

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.RECOVERABLE


# ============================================================
# LEDGER ERRORS
# ============================================================

class LedgerError(TradingException):
    """Base class for position/execution ledger errors."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.RECOVERABLE


class PositionNotFound(LedgerError):
    """Position id does not exist."""

    default_severity = Severity.LOW

    def __init__(self, position_id: int):
        super().__init__(
            f"Position {position_id} not found",
            context={"position_id": position_id},
        )
        self.position_id = position_id


class InsufficientQuantity(LedgerError):
    """A SELL exceeds the position's remaining quantity. Never clamped."""

    def __init__(self, position_id: int, requested: Decimal, remaining: Decimal):
        super().__init__(
            f"Position {position_id}: requested {requested} exceeds remaining {remaining}",
            context={
                "position_id": position_id,
                "requested": requested,
                "remaining": remaining,
            },
        )
        self.position_id = position_id
        self.requested = requested
        self.remaining = remaining


class PositionAlreadyClosed(LedgerError):
    """Operation targets a CLOSED position."""

    def __init__(self, position_id: int):
        super().__init__(
            f"Position {position_id} is already closed",
            context={"position_id": position_id},
        )
        self.position_id = position_id


class NoCompatiblePosition(LedgerError):
    """No OPEN position of the symbol can absorb a SELL fill."""

    def __init__(self, account_id: int, symbol: str, qty: Decimal, exchange_order_id: str = ""):
        super().__init__(
            f"No compatible OPEN position for {symbol} qty={qty} on account {account_id}",
            context={
                "account_id": account_id,
                "symbol": symbol,
                "qty": qty,
                "exchange_order_id": exchange_order_id,
            },
        )


class DuplicateExchangeOrder(LedgerError):
    """
    The exchange order id is already recorded.

    Treated as an idempotent no-op by callers, never surfaced as a failure.
    """

    default_severity = Severity.LOW

    def __init__(self, account_id: int, exchange_order_id: str):
        super().__init__(
            f"Exchange order {exchange_order_id} already recorded for account {account_id}",
            context={"account_id": account_id, "exchange_order_id": exchange_order_id},
        )
        self.exchange_order_id = exchange_order_id


class PositionNotPurgeable(LedgerError):
    """Position has linked fills or quantity and cannot be deleted."""

    def __init__(self, position_id: int, reason: str):
        super().__init__(
            f"Position {position_id} cannot be purged: {reason}",
            context={"position_id": position_id, "reason": reason},
        )


# ============================================================
# EXECUTION ERRORS
# ============================================================

class ExecutionError(TradingException):
    """Base class for order/job errors."""

    default_severity = Severity.HIGH


class ExchangeUnavailable(ExecutionError):
    """Exchange could not be reached. Retryable with bounded backoff."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.TRANSIENT

    def __init__(self, message: str, error_code: str = "NET_CONNECTION_FAILED", **kwargs):
        context = kwargs.pop("context", {})
        context["error_code"] = error_code
        super().__init__(message, context=context, **kwargs)
        self.error_code = error_code


class OrderRejected(ExecutionError):
    """Exchange rejected the order. Not retryable."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, message: str, error_code: str = "ORDER_REJECTED", **kwargs):
        context = kwargs.pop("context", {})
        context["error_code"] = error_code
        super().__init__(message, context=context, **kwargs)
        self.error_code = error_code


class InvalidStateTransition(ExecutionError):
    """Job status transition not permitted."""

    default_severity = Severity.MEDIUM

    def __init__(self, job_id: int, from_state: str, to_state: str, reason: str = ""):
        super().__init__(
            f"Job {job_id}: cannot transition {from_state} -> {to_state}"
            + (f" ({reason})" if reason else ""),
            context={"job_id": job_id, "from_state": from_state, "to_state": to_state},
        )


class SellAlreadyPending(ExecutionError):
    """A SELL job for the position is already in flight."""

    default_severity = Severity.LOW

    def __init__(self, position_id: int):
        super().__init__(
            f"Position {position_id} already has a pending SELL job",
            context={"position_id": position_id},
        )


# ============================================================
# SIGNAL CONFIRMATION ERRORS
# ============================================================

class SignalError(TradingException):
    """Base class for signal confirmation errors."""

    default_severity = Severity.LOW


class MonitorAlreadyActive(SignalError):
    """A monitor for (account, symbol, side) is already running."""

    def __init__(self, account_id: int, symbol: str, side: str):
        super().__init__(
            f"Monitor already active for {symbol} {side} on account {account_id}",
            context={"account_id": account_id, "symbol": symbol, "side": side},
        )


class CooldownActive(SignalError):
    """(account, symbol, side) is cooling down after a finished monitor."""

    def __init__(self, account_id: int, symbol: str, side: str, until: datetime):
        super().__init__(
            f"Cooldown active for {symbol} {side} on account {account_id} until {until.isoformat()}",
            context={"account_id": account_id, "symbol": symbol, "side": side, "until": until},
        )
        self.until = until


class MonitorNotFound(SignalError):
    """Monitor id does not exist."""

    def __init__(self, monitor_id: str):
        super().__init__(f"Monitor {monitor_id} not found", context={"monitor_id": monitor_id})


# ============================================================
# SCHEDULER ERRORS
# ============================================================

class SchedulerError(TradingException):
    """Base class for scheduler errors."""


class SchedulerJobNotFound(SchedulerError):
    """Named job is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Scheduled job '{name}' is not registered", context={"job": name})


__all__ = [
    "Severity",
    "ErrorClassification",
    "TradingException",
    "ConfigurationError",
    "InvalidRiskConfig",
    "LedgerError",
    "PositionNotFound",
    "InsufficientQuantity",
    "PositionAlreadyClosed",
    "NoCompatiblePosition",
    "DuplicateExchangeOrder",
    "PositionNotPurgeable",
    "ExecutionError",
    "ExchangeUnavailable",
    "OrderRejected",
    "InvalidStateTransition",
    "SellAlreadyPending",
    "SignalError",
    "MonitorAlreadyActive",
    "CooldownActive",
    "MonitorNotFound",
    "SchedulerError",
    "SchedulerJobNotFound",
]
