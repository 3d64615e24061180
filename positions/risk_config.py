"""
Positions - Risk-Exit Configuration.

============================================================
PURPOSE
============================================================
Immutable risk-exit configuration snapshot and the patch type
used by bulk configuration updates.

RULES (enforced at configuration time, never at evaluation):
- Enabling TSG forces SG off and clears its thresholds
- Explicitly enabling both TSG and SG is rejected
- Thresholds must be positive finite numbers
- Toggles accept booleans and "true" / "false" / "1" / "0" only
- An enabled rule must have all of its thresholds
- TP and TSG may coexist

============================================================
"""

from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from core.exceptions import InvalidRiskConfig


_PCT_FIELDS = (
    "sl_pct",
    "tp_pct",
    "sg_pct",
    "sg_drop_pct",
    "tsg_activation_pct",
    "tsg_drop_pct",
)

_REQUIRED_BY_RULE = {
    "sl_enabled": ("sl_pct",),
    "tp_enabled": ("tp_pct",),
    "sg_enabled": ("sg_pct", "sg_drop_pct"),
    "tsg_enabled": ("tsg_activation_pct", "tsg_drop_pct"),
}

_FLAG_STRINGS = {"true": True, "1": True, "false": False, "0": False}


def parse_flag(value: Any) -> bool:
    """
    Strict boolean from loose input.

    Raises:
        ValueError: anything but a bool, 0 / 1 or "true" / "false" / "1" / "0"
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in _FLAG_STRINGS:
        return _FLAG_STRINGS[value.strip().lower()]
    raise ValueError(f"not a boolean: {value!r}")


def _check_thresholds(config: Any) -> None:
    for name in _PCT_FIELDS:
        value = getattr(config, name)
        if value is not None and (not value.is_finite() or value <= 0):
            raise InvalidRiskConfig(f"{name} must be a positive number, got {value}", config_key=name)


# ============================================================
# CONFIG SNAPSHOT
# ============================================================

@dataclass(frozen=True)
class RiskExitConfig:
    """Risk-exit toggles and thresholds (percentages)."""

    sl_enabled: bool = False
    sl_pct: Optional[Decimal] = None
    tp_enabled: bool = False
    tp_pct: Optional[Decimal] = None
    sg_enabled: bool = False
    sg_pct: Optional[Decimal] = None
    sg_drop_pct: Optional[Decimal] = None
    tsg_enabled: bool = False
    tsg_activation_pct: Optional[Decimal] = None
    tsg_drop_pct: Optional[Decimal] = None

    @classmethod
    def from_model(cls, model: Any) -> "RiskExitConfig":
        """Snapshot from a PositionModel or AccountTradingDefaultsModel."""
        return cls(**{f.name: getattr(model, f.name) for f in fields(cls)})

    @property
    def any_enabled(self) -> bool:
        return self.sl_enabled or self.tp_enabled or self.sg_enabled or self.tsg_enabled

    def as_columns(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def validate(self) -> "RiskExitConfig":
        """
        Validate a complete configuration.

        Raises:
            InvalidRiskConfig
        """
        if self.sg_enabled and self.tsg_enabled:
            raise InvalidRiskConfig(
                "Stop Gain and Trailing Stop Gain cannot both be enabled",
                config_key="sg_enabled",
            )

        _check_thresholds(self)

        for toggle, required in _REQUIRED_BY_RULE.items():
            if getattr(self, toggle):
                missing = [name for name in required if getattr(self, name) is None]
                if missing:
                    raise InvalidRiskConfig(
                        f"{toggle} requires {', '.join(missing)}",
                        config_key=missing[0],
                    )

        return self


# ============================================================
# CONFIG PATCH
# ============================================================

@dataclass(frozen=True)
class RiskConfigPatch:
    """
    Partial update; None means "leave unchanged".

    Threshold fields cannot be cleared through a patch except by
    the TSG-forces-SG-off rule.
    """

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

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskConfigPatch":
        """
        Build a patch from loose input (API payloads, CLI).

        Raises:
            InvalidRiskConfig: on unknown keys, non-numeric thresholds
                or toggles that are not booleans
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidRiskConfig(f"Unknown risk config fields: {sorted(unknown)}")

        values: Dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                continue
            if key in _PCT_FIELDS:
                try:
                    values[key] = Decimal(str(value))
                except InvalidOperation:
                    raise InvalidRiskConfig(f"{key} is not a number: {value!r}", config_key=key)
            else:
                try:
                    values[key] = parse_flag(value)
                except ValueError:
                    raise InvalidRiskConfig(f"{key} is not a boolean: {value!r}", config_key=key)
        return cls(**values)

    def check(self) -> "RiskConfigPatch":
        """
        Reject contradictory or non-positive values in the patch itself.

        Raises:
            InvalidRiskConfig
        """
        if self.tsg_enabled is True and self.sg_enabled is True:
            raise InvalidRiskConfig(
                "Stop Gain and Trailing Stop Gain cannot both be enabled",
                config_key="tsg_enabled",
            )
        _check_thresholds(self)
        return self

    def apply_to(self, current: RiskExitConfig) -> RiskExitConfig:
        """
        Merge onto a current configuration and validate the result.

        Raises:
            InvalidRiskConfig
        """
        self.check()

        changes = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }
        merged = replace(current, **changes)

        if self.tsg_enabled is True:
            merged = replace(merged, sg_enabled=False, sg_pct=None, sg_drop_pct=None)

        return merged.validate()

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))
