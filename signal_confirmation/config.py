"""
Signal Confirmation - Configuration.

============================================================
PURPOSE
============================================================
Thresholds of the price-action confirmation machine, one set
per (account, side).

BUY side watches for a rise off the running minimum
(rise_trigger_pct / rise_cycles_min / max_fall_pct). SELL side
mirrors it with a fall off the running maximum
(fall_trigger_pct / fall_cycles_min / max_rise_pct). Both are
stored in the same columns: trigger_pct, trigger_cycles_min,
max_adverse_pct.

Monitors take a snapshot of the config at creation.

============================================================
"""

import logging
from dataclasses import asdict, dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from sqlalchemy import select

from core.clock import utcnow
from core.exceptions import ConfigurationError
from core.types import Side
from database.engine import Database
from positions.risk_config import parse_flag
from storage.models import ConfirmationConfigModel


logger = logging.getLogger(__name__)


# Side-specific names accepted by with_updates()
SIDE_ALIASES = {
    Side.BUY: {
        "rise_trigger_pct": "trigger_pct",
        "rise_cycles_min": "trigger_cycles_min",
        "max_fall_pct": "max_adverse_pct",
    },
    Side.SELL: {
        "fall_trigger_pct": "trigger_pct",
        "fall_cycles_min": "trigger_cycles_min",
        "max_rise_pct": "max_adverse_pct",
    },
}


# ============================================================
# CONFIRMATION CONFIG
# ============================================================

@dataclass(frozen=True)
class ConfirmationConfig:
    """Confirmation thresholds for one side."""

    side: Side = Side.BUY

    enabled: bool = True
    """When False the signal is executed without monitoring."""

    check_interval_sec: int = 30
    """Minimum seconds between two evaluations of a monitor."""

    lateral_tolerance_pct: Decimal = Decimal("0.3")
    lateral_cycles_min: int = 4

    trigger_pct: Decimal = Decimal("0.75")
    """Favorable move off the extreme that counts as momentum."""

    trigger_cycles_min: int = 2
    """Consecutive momentum ticks required."""

    max_adverse_pct: Decimal = Decimal("6")
    """Maximum move against the signal, measured from the entry price."""

    max_monitoring_time_min: int = 60
    cooldown_after_execution_min: int = 30

    @classmethod
    def buy_defaults(cls) -> "ConfirmationConfig":
        return cls(side=Side.BUY)

    @classmethod
    def sell_defaults(cls) -> "ConfirmationConfig":
        return cls(side=Side.SELL, trigger_pct=Decimal("0.5"))

    @classmethod
    def defaults_for(cls, side: Side) -> "ConfirmationConfig":
        return cls.buy_defaults() if side is Side.BUY else cls.sell_defaults()

    @classmethod
    def from_model(cls, row: ConfirmationConfigModel) -> "ConfirmationConfig":
        return cls(
            side=Side(row.side),
            enabled=row.enabled,
            check_interval_sec=row.check_interval_sec,
            lateral_tolerance_pct=row.lateral_tolerance_pct,
            lateral_cycles_min=row.lateral_cycles_min,
            trigger_pct=row.trigger_pct,
            trigger_cycles_min=row.trigger_cycles_min,
            max_adverse_pct=row.max_adverse_pct,
            max_monitoring_time_min=row.max_monitoring_time_min,
            cooldown_after_execution_min=row.cooldown_after_execution_min,
        )

    def with_updates(self, updates: Dict[str, Any]) -> "ConfirmationConfig":
        """
        Copy with updated fields.

        Accepts the generic names and the side-specific aliases
        (rise_trigger_pct, max_fall_pct, fall_cycles_min, ...).

        Raises:
            ConfigurationError: unknown key or invalid value
        """
        known = {f.name: f for f in fields(self) if f.name != "side"}
        aliases = SIDE_ALIASES[self.side]
        changes: Dict[str, Any] = {}

        for key, value in updates.items():
            name = aliases.get(key, key)
            if name not in known:
                raise ConfigurationError(f"Unknown confirmation setting: {key}", config_key=key)
            try:
                if known[name].type in (bool, "bool"):
                    changes[name] = parse_flag(value)
                elif known[name].type in (int, "int"):
                    changes[name] = int(value)
                else:
                    changes[name] = Decimal(str(value))
            except (TypeError, ValueError, InvalidOperation):
                raise ConfigurationError(f"Invalid value for {key}: {value!r}", config_key=key)

        return replace(self, **changes).validate()

    def validate(self) -> "ConfirmationConfig":
        for name in ("check_interval_sec", "lateral_cycles_min", "trigger_cycles_min", "max_monitoring_time_min"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive", config_key=name)
        for name in ("lateral_tolerance_pct", "trigger_pct", "max_adverse_pct"):
            value = getattr(self, name)
            if not value.is_finite() or value <= 0:
                raise ConfigurationError(f"{name} must be a positive number", config_key=name)
        if self.cooldown_after_execution_min < 0:
            raise ConfigurationError(
                "cooldown_after_execution_min must be >= 0", config_key="cooldown_after_execution_min",
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
        return data


# ============================================================
# REPOSITORY
# ============================================================

class ConfirmationConfigRepository:
    """Reads and writes confirmation_configs rows."""

    def __init__(self, db: Database):
        self._db = db

    async def get(self, account_id: int, side: Side) -> ConfirmationConfig:
        """Stored config, or the side defaults when none is stored."""
        async with self._db.session_scope() as session:
            row = (await session.execute(
                select(ConfirmationConfigModel).where(
                    ConfirmationConfigModel.exchange_account_id == account_id,
                    ConfirmationConfigModel.side == side.value,
                )
            )).scalars().first()
            if row is None:
                return ConfirmationConfig.defaults_for(side)
            return ConfirmationConfig.from_model(row)

    async def update(self, account_id: int, side: Side, updates: Dict[str, Any]) -> ConfirmationConfig:
        """
        Merge updates into the stored (or default) config and persist it.

        Raises:
            ConfigurationError
        """
        config = (await self.get(account_id, side)).with_updates(updates)
        values = {k: v for k, v in asdict(config).items() if k != "side"}

        async with self._db.session_scope() as session:
            row = (await session.execute(
                select(ConfirmationConfigModel).where(
                    ConfirmationConfigModel.exchange_account_id == account_id,
                    ConfirmationConfigModel.side == side.value,
                )
            )).scalars().first()
            if row is None:
                row = ConfirmationConfigModel(exchange_account_id=account_id, side=side.value)
                session.add(row)
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = utcnow()

        logger.info(f"Confirmation config updated for account {account_id} {side.value}: {updates}")
        return config

    async def get_all(self, account_id: int) -> Dict[str, ConfirmationConfig]:
        return {side.value: await self.get(account_id, side) for side in Side}
