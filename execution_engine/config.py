"""
Execution Engine - Configuration.

============================================================
PURPOSE
============================================================
Configuration for order placement, fill linking and
reconciliation.

CRITICAL CONSTRAINTS:
- No blind retries (only retryable error codes)
- No infinite loops (bounded retry count)
- Deterministic behavior

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for order placement.

    SAFETY: Limited retries with exponential backoff.
    """

    max_retries: int = 3
    """Maximum number of retry attempts."""

    initial_delay_seconds: float = 1.0
    """Initial delay before first retry."""

    max_delay_seconds: float = 30.0
    """Maximum delay between retries."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    # SAFETY: Never retry on these
    never_retry_codes: List[str] = field(default_factory=lambda: [
        "INSUFFICIENT_BALANCE",
        "INVALID_ORDER",
        "MIN_NOTIONAL",
        "SYMBOL_NOT_TRADING",
    ])
    """Error codes that should never trigger retry."""

    def delay_for_attempt(self, attempt: int) -> float:
        """Backoff delay before retry number attempt (0-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay_seconds)


# ============================================================
# LEDGER CONFIGURATION
# ============================================================

@dataclass
class LedgerConfig:
    """Position ledger behavior."""

    default_grouping_window_minutes: int = 0
    """BUY fills within this window of a position's start are grouped (0 disables)."""

    min_sell_notional_usd: Decimal = Decimal("5")
    """Residue below this notional is not sold by automated exits."""

    quote_currencies: List[str] = field(default_factory=lambda: ["USDT", "USDC", "BUSD", "FDUSD", "USD"])
    """Fee currencies deducted from realized P&L."""


# ============================================================
# RECONCILIATION CONFIGURATION
# ============================================================

@dataclass
class ReconciliationConfig:
    """
    Reconciliation configuration.
    """

    enabled: bool = True
    """Whether the periodic orphan sweep is scheduled."""

    interval_seconds: float = 900.0
    """Periodic sweep interval."""

    lookback_hours: int = 24
    """Window used by scheduled missing-order detection."""

    auto_fix_orphans: bool = True
    """Whether the scheduled sweep attempts automatic relinking."""

    stale_job_minutes: int = 60
    """EXECUTING / PARTIALLY_FILLED jobs idle this long fail unless their order is still open."""


# ============================================================
# MAIN CONFIGURATION
# ============================================================

@dataclass
class ExecutionEngineConfig:
    """Complete execution engine configuration."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)

    placement_workers: int = 2
    """Concurrent order placement workers."""

    queue_maxsize: int = 1000
    """Bound on pending trade intents."""

    @classmethod
    def for_testing(cls) -> "ExecutionEngineConfig":
        """Get configuration for testing (no backoff sleeps)."""
        return cls(
            retry=RetryConfig(
                max_retries=2,
                initial_delay_seconds=0.0,
                max_delay_seconds=0.0,
            ),
            placement_workers=1,
        )

    @classmethod
    def for_production(cls) -> "ExecutionEngineConfig":
        """Get configuration for production."""
        return cls(
            retry=RetryConfig(max_retries=3),
            reconciliation=ReconciliationConfig(enabled=True, auto_fix_orphans=True),
        )
