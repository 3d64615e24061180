"""
Orchestrator - Settings.

============================================================
RESPONSIBILITY
============================================================
Process-level settings read from the environment.

Sources (highest priority first):
1. Explicit keyword arguments (CLI overrides)
2. Environment variables
3. .env file (python-dotenv)
4. Defaults below

============================================================
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from core.exceptions import ConfigurationError
from database.engine import DEFAULT_DATABASE_URL, get_database_url


LOG_FORMATS = ("json", "text")


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}", config_key=key)


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}", config_key=key)


def _env_decimal(key: str, default: Decimal) -> Decimal:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"{key} must be a decimal, got {raw!r}", config_key=key)


@dataclass
class EngineSettings:
    """Settings for one engine process."""

    # Persistence
    database_url: str = DEFAULT_DATABASE_URL
    """Async SQLAlchemy URL (postgresql+asyncpg:// or sqlite+aiosqlite://)."""

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    """json or text."""

    # Ledger
    grouping_window_minutes: int = 0
    """Default BUY grouping window for accounts without stored defaults."""

    min_sell_notional_usd: Decimal = Decimal("5")
    """Residue below this quote value is never sold by a risk exit."""

    # Scheduler intervals
    risk_exit_interval_sec: float = 10.0
    confirmation_interval_sec: float = 5.0
    reconciliation_interval_sec: float = 900.0

    # Exchange
    exchange_account_id: int = 1
    """Account the API key pair below belongs to."""

    exchange_api_key: str = ""
    exchange_api_secret: str = field(default="", repr=False)
    exchange_base_url: str = "https://api.binance.com"

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None, **overrides: Any) -> "EngineSettings":
        """
        Load settings from the environment.

        Raises:
            ConfigurationError: a variable cannot be parsed or the result is invalid
        """
        load_dotenv(dotenv_path)
        defaults = cls()
        settings = cls(
            database_url=get_database_url(),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            log_format=os.getenv("LOG_FORMAT", defaults.log_format).lower(),
            grouping_window_minutes=_env_int("GROUPING_WINDOW_MINUTES", defaults.grouping_window_minutes),
            min_sell_notional_usd=_env_decimal("MIN_SELL_NOTIONAL_USD", defaults.min_sell_notional_usd),
            risk_exit_interval_sec=_env_float("RISK_EXIT_INTERVAL_SEC", defaults.risk_exit_interval_sec),
            confirmation_interval_sec=_env_float("CONFIRMATION_INTERVAL_SEC", defaults.confirmation_interval_sec),
            reconciliation_interval_sec=_env_float(
                "RECONCILIATION_INTERVAL_SEC", defaults.reconciliation_interval_sec
            ),
            exchange_account_id=_env_int("EXCHANGE_ACCOUNT_ID", defaults.exchange_account_id),
            exchange_api_key=os.getenv("EXCHANGE_API_KEY", ""),
            exchange_api_secret=os.getenv("EXCHANGE_API_SECRET", ""),
            exchange_base_url=os.getenv("EXCHANGE_BASE_URL", defaults.exchange_base_url),
            api_host=os.getenv("API_HOST", defaults.api_host),
            api_port=_env_int("API_PORT", defaults.api_port),
        )
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if overrides:
            settings = replace(settings, **overrides)

        errors = settings.validate()
        if errors:
            raise ConfigurationError(f"Invalid settings: {', '.join(errors)}")
        return settings

    def validate(self) -> List[str]:
        """Return validation errors (empty when valid)."""
        errors = []
        if self.log_format not in LOG_FORMATS:
            errors.append(f"LOG_FORMAT must be one of {LOG_FORMATS}")
        if self.grouping_window_minutes < 0:
            errors.append("GROUPING_WINDOW_MINUTES must be >= 0")
        if self.min_sell_notional_usd < 0:
            errors.append("MIN_SELL_NOTIONAL_USD must be >= 0")
        for name in ("risk_exit_interval_sec", "confirmation_interval_sec", "reconciliation_interval_sec"):
            if getattr(self, name) <= 0:
                errors.append(f"{name.upper()} must be positive")
        if bool(self.exchange_api_key) != bool(self.exchange_api_secret):
            errors.append("EXCHANGE_API_KEY and EXCHANGE_API_SECRET must be set together")
        return errors

    @property
    def has_exchange_credentials(self) -> bool:
        return bool(self.exchange_api_key and self.exchange_api_secret)

    def to_dict(self) -> Dict[str, Any]:
        """Settings without secrets, for the startup log."""
        return {
            "database_url": self.database_url.split("@")[-1],
            "log_level": self.log_level,
            "log_format": self.log_format,
            "grouping_window_minutes": self.grouping_window_minutes,
            "min_sell_notional_usd": str(self.min_sell_notional_usd),
            "risk_exit_interval_sec": self.risk_exit_interval_sec,
            "confirmation_interval_sec": self.confirmation_interval_sec,
            "reconciliation_interval_sec": self.reconciliation_interval_sec,
            "exchange_account_id": self.exchange_account_id,
            "exchange_credentials": self.has_exchange_credentials,
            "exchange_base_url": self.exchange_base_url,
            "api": f"{self.api_host}:{self.api_port}",
        }
