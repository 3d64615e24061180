"""
Execution Engine Package.

============================================================
PURPOSE
============================================================
Turns trade intents into exchange orders and exchange fills
into ledger mutations.

CRITICAL PRINCIPLE:
    "Execution Engine is REACTIVE, not decision-making."
    Risk exits, confirmed signals and operators decide;
    this package only places, retries and links.

AUTHORITY BOUNDARIES:
    CAN:
        - Place market orders
        - Retry on transient failures (bounded)
        - Record fills and link SELLs to positions
        - Cancel jobs that have not reached the exchange

    MUST NOT:
        - Resize or invent trades
        - Clamp a SELL to the remaining quantity
        - Guess the position for an unresolved SELL

============================================================
MODULES
============================================================
- types: fills, open orders, trade intents
- config: retry, ledger and reconciliation configuration
- errors: error code registry
- state_machine: trade job lifecycle
- adapters: exchange adapters (Binance spot, paper)
- price_feed: live price sources
- repository: execution and job persistence
- linker: fill -> execution -> position
- order_placement: intent -> job -> order -> fills

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    ExchangeFill,
    OpenOrder,
    PlacedOrder,
    TradeIntent,
)

# ============================================================
# CONFIG
# ============================================================
from .config import (
    RetryConfig,
    LedgerConfig,
    ReconciliationConfig,
    ExecutionEngineConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    is_retryable,
)

# ============================================================
# STATE MACHINE
# ============================================================
from .state_machine import (
    VALID_TRANSITIONS,
    JobTransitionEvent,
    TransitionGuard,
    JobStateMachine,
)

# ============================================================
# PERSISTENCE, LINKING, PLACEMENT
# ============================================================
from .repository import ExecutionRepository, ExecutionFilter
from .linker import ExecutionLinker, LinkResult
from .order_placement import OrderPlacementService
from .price_feed import PriceFeed, StaticPriceFeed, BinancePriceFeed, TradeModePriceFeed


__all__ = [
    # Types
    "ExchangeFill",
    "OpenOrder",
    "PlacedOrder",
    "TradeIntent",
    # Config
    "RetryConfig",
    "LedgerConfig",
    "ReconciliationConfig",
    "ExecutionEngineConfig",
    # Errors
    "ErrorCategory",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "is_retryable",
    # State machine
    "VALID_TRANSITIONS",
    "JobTransitionEvent",
    "TransitionGuard",
    "JobStateMachine",
    # Services
    "ExecutionRepository",
    "ExecutionFilter",
    "ExecutionLinker",
    "LinkResult",
    "OrderPlacementService",
    "PriceFeed",
    "StaticPriceFeed",
    "BinancePriceFeed",
    "TradeModePriceFeed",
]
