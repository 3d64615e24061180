"""
Execution Engine - Error Code Registry.

============================================================
PURPOSE
============================================================
Classification of exchange and placement failure codes.

RETRYABLE vs NON-RETRYABLE:
- Retryable: transient errors (network, timeout, rate limit);
  raised by adapters as ExchangeUnavailable
- Non-retryable: permanent rejections; raised as OrderRejected

Job reason codes for terminal non-success states come from
this registry.

============================================================
"""

from enum import Enum
from typing import Dict, Set
from dataclasses import dataclass


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    NETWORK = "NETWORK"
    """Network/communication error."""

    TIMEOUT = "TIMEOUT"
    """Request timed out."""

    RATE_LIMIT = "RATE_LIMIT"
    """Rate limit exceeded."""

    EXCHANGE = "EXCHANGE"
    """Exchange rejected the order."""

    LEDGER = "LEDGER"
    """Ledger refused the operation."""

    INTERNAL = "INTERNAL"
    """Internal system error."""


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass(frozen=True)
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    """Error code."""

    category: ErrorCategory
    """Error category."""

    is_retryable: bool
    """Whether this error is retryable."""

    description: str
    """Human-readable description."""


def _info(code: str, category: ErrorCategory, retryable: bool, description: str) -> ErrorCodeInfo:
    return ErrorCodeInfo(code=code, category=category, is_retryable=retryable, description=description)


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    info.code: info for info in [
        # ========== TRANSIENT ==========
        _info("NET_CONNECTION_FAILED", ErrorCategory.NETWORK, True, "Could not reach exchange"),
        _info("NET_SERVER_ERROR", ErrorCategory.NETWORK, True, "Exchange returned 5xx"),
        _info("TMO_READ", ErrorCategory.TIMEOUT, True, "Exchange request timed out"),
        _info("RATE_LIMITED", ErrorCategory.RATE_LIMIT, True, "Exchange rate limit exceeded"),
        # ========== EXCHANGE REJECTIONS ==========
        _info("ORDER_REJECTED", ErrorCategory.EXCHANGE, False, "Exchange rejected the order"),
        _info("INSUFFICIENT_BALANCE", ErrorCategory.EXCHANGE, False, "Account balance too low"),
        _info("INVALID_ORDER", ErrorCategory.EXCHANGE, False, "Order parameters invalid"),
        _info("MIN_NOTIONAL", ErrorCategory.EXCHANGE, False, "Order notional below exchange minimum"),
        _info("SYMBOL_NOT_TRADING", ErrorCategory.EXCHANGE, False, "Symbol is not trading"),
        _info("AUTH_FAILED", ErrorCategory.EXCHANGE, False, "API credentials rejected"),
        # ========== LEDGER ==========
        _info("POSITION_NOT_FOUND", ErrorCategory.LEDGER, False, "Target position does not exist"),
        _info("POSITION_ALREADY_CLOSED", ErrorCategory.LEDGER, False, "Target position already closed"),
        _info("QTY_EXCEEDS_REMAINING", ErrorCategory.LEDGER, False, "SELL exceeds remaining quantity"),
        _info("SELL_ALREADY_PENDING", ErrorCategory.LEDGER, False, "Another SELL job targets the position"),
        # ========== INTERNAL ==========
        _info("RETRIES_EXHAUSTED", ErrorCategory.INTERNAL, False, "Retry budget exhausted"),
        _info("INTERNAL_ERROR", ErrorCategory.INTERNAL, False, "Unexpected internal error"),
        _info("CANCELLED_BY_OPERATOR", ErrorCategory.INTERNAL, False, "Cancelled by operator"),
    ]
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Returns:
        ErrorCodeInfo or a non-retryable internal default
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        is_retryable=False,
        description=f"Unknown error: {code}",
    ))


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}
