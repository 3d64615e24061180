"""
Risk Exit Configuration Tests.

Validation of complete configurations and merging of patches.
"""

from decimal import Decimal

import pytest

from core.exceptions import InvalidRiskConfig
from positions import RiskConfigPatch, RiskExitConfig


class TestRiskExitConfig:
    """Tests for RiskExitConfig.validate()."""

    def test_empty_config_is_valid(self):
        config = RiskExitConfig().validate()

        assert not config.any_enabled

    def test_sg_and_tsg_are_exclusive(self):
        config = RiskExitConfig(
            sg_enabled=True, sg_pct=Decimal("3"), sg_drop_pct=Decimal("1"),
            tsg_enabled=True, tsg_activation_pct=Decimal("2"), tsg_drop_pct=Decimal("1"),
        )

        with pytest.raises(InvalidRiskConfig):
            config.validate()

    def test_enabled_rule_requires_thresholds(self):
        with pytest.raises(InvalidRiskConfig) as exc_info:
            RiskExitConfig(tsg_enabled=True, tsg_activation_pct=Decimal("2")).validate()

        assert exc_info.value.context["config_key"] == "tsg_drop_pct"

    def test_thresholds_must_be_positive(self):
        with pytest.raises(InvalidRiskConfig):
            RiskExitConfig(sl_enabled=True, sl_pct=Decimal("-1")).validate()

    def test_thresholds_must_be_finite(self):
        with pytest.raises(InvalidRiskConfig):
            RiskExitConfig(tp_enabled=True, tp_pct=Decimal("Infinity")).validate()

    def test_disabled_rule_may_keep_thresholds(self):
        config = RiskExitConfig(tp_enabled=False, tp_pct=Decimal("10")).validate()

        assert config.tp_pct == Decimal("10")


class TestRiskConfigPatch:
    """Tests for RiskConfigPatch."""

    def test_from_dict_coerces_numbers(self):
        patch = RiskConfigPatch.from_dict({"sl_enabled": True, "sl_pct": "2.5", "tp_pct": None})

        assert patch.sl_pct == Decimal("2.5")
        assert patch.tp_pct is None

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(InvalidRiskConfig):
            RiskConfigPatch.from_dict({"stop_loss": 2})

    def test_from_dict_rejects_non_numeric(self):
        with pytest.raises(InvalidRiskConfig):
            RiskConfigPatch.from_dict({"sl_pct": "two"})

    @pytest.mark.parametrize("raw,expected", [
        (True, True),
        (False, False),
        ("false", False),
        ("FALSE", False),
        ("0", False),
        (0, False),
        ("true", True),
        ("1", True),
    ])
    def test_from_dict_parses_toggles_strictly(self, raw, expected):
        assert RiskConfigPatch.from_dict({"sl_enabled": raw}).sl_enabled is expected

    @pytest.mark.parametrize("raw", ["no", "yes", "", 2, "enabled"])
    def test_from_dict_rejects_non_boolean_toggles(self, raw):
        with pytest.raises(InvalidRiskConfig) as exc_info:
            RiskConfigPatch.from_dict({"tp_enabled": raw})

        assert exc_info.value.context["config_key"] == "tp_enabled"

    @pytest.mark.parametrize("raw", ["NaN", "Infinity", "-Infinity", "sNaN"])
    def test_non_finite_thresholds_are_rejected(self, raw):
        patch = RiskConfigPatch.from_dict({"sl_enabled": True, "sl_pct": raw})

        with pytest.raises(InvalidRiskConfig) as exc_info:
            patch.apply_to(RiskExitConfig())

        assert exc_info.value.context["config_key"] == "sl_pct"

    def test_apply_merges_only_given_fields(self):
        current = RiskExitConfig(sl_enabled=True, sl_pct=Decimal("5"))

        merged = RiskConfigPatch(tp_enabled=True, tp_pct=Decimal("8")).apply_to(current)

        assert merged.sl_enabled and merged.sl_pct == Decimal("5")
        assert merged.tp_enabled and merged.tp_pct == Decimal("8")

    def test_tsg_forces_sg_off(self):
        current = RiskExitConfig(sg_enabled=True, sg_pct=Decimal("3"), sg_drop_pct=Decimal("1"))

        merged = RiskConfigPatch(
            tsg_enabled=True, tsg_activation_pct=Decimal("2"), tsg_drop_pct=Decimal("1"),
        ).apply_to(current)

        assert merged.tsg_enabled
        assert not merged.sg_enabled
        assert merged.sg_pct is None and merged.sg_drop_pct is None

    def test_enabling_both_in_one_patch_is_rejected(self):
        with pytest.raises(InvalidRiskConfig):
            RiskConfigPatch(sg_enabled=True, tsg_enabled=True).check()

    def test_enabling_sg_while_tsg_on_is_rejected(self):
        current = RiskExitConfig(tsg_enabled=True, tsg_activation_pct=Decimal("2"), tsg_drop_pct=Decimal("1"))

        with pytest.raises(InvalidRiskConfig):
            RiskConfigPatch(sg_enabled=True, sg_pct=Decimal("3"), sg_drop_pct=Decimal("1")).apply_to(current)

    def test_is_empty(self):
        assert RiskConfigPatch().is_empty()
        assert not RiskConfigPatch(sl_enabled=False).is_empty()
