"""
Tests for policy parsing, validation and the built-in default policy.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from hidtrace.interceptor.constants import LinkSpeed, USBClass
from hidtrace.interceptor.descriptors import create_test_descriptor
from hidtrace.policy.defaults import DEFAULT_POLICY, create_default_policy, resolve_policy
from hidtrace.policy.models import PowerSpeedSignature, Severity
from hidtrace.policy.parser import (
    PolicyParseError,
    load_policy,
    parse_envelope,
    parse_policy,
    parse_rule,
    parse_signature,
    validate_policy,
)


def minimal_policy(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "envelopes": [{"class": "hid", "min_power_ma": 20, "max_power_ma": 400, "speeds": ["low", "full"]}],
        "rules": [{"id": "hs", "pattern": "new high-speed", "severity": "high"}],
    }
    data.update(overrides)
    return data


class TestParseEnvelope:
    """Tests for envelope parsing."""

    def test_parse_alias(self) -> None:
        """Class aliases resolve to class codes."""
        envelope = parse_envelope({"class": "hid", "max_power_ma": 100})

        assert envelope.device_class == USBClass.HID
        assert envelope.max_power_ma == 100
        assert envelope.min_power_ma is None
        assert envelope.speeds is None

    def test_parse_hex_class_and_speeds(self) -> None:
        envelope = parse_envelope({"class": "0x08", "speeds": ["high", "super-plus"]})

        assert envelope.device_class == USBClass.MASS_STORAGE
        assert envelope.speeds == frozenset({LinkSpeed.HIGH, LinkSpeed.SUPER_PLUS})

    def test_min_above_max_rejected(self) -> None:
        """Test that an inverted power range is rejected."""
        with pytest.raises(PolicyParseError, match="exceeds"):
            parse_envelope({"class": "hid", "min_power_ma": 500, "max_power_ma": 100})

    def test_unknown_speed_rejected(self) -> None:
        with pytest.raises(PolicyParseError, match="Unknown link speed"):
            parse_envelope({"class": "hid", "speeds": ["warp"]})

    def test_empty_speeds_rejected(self) -> None:
        with pytest.raises(PolicyParseError, match="speeds"):
            parse_envelope({"class": "hid", "speeds": []})

    def test_unknown_class_rejected(self) -> None:
        with pytest.raises(PolicyParseError, match="Unknown device class"):
            parse_envelope({"class": "toaster"})

    def test_negative_power_rejected(self) -> None:
        with pytest.raises(PolicyParseError, match="non-negative"):
            parse_envelope({"class": "hid", "max_power_ma": -1})

    def test_weight_override(self) -> None:
        """Per-envelope weights override the global weights."""
        envelope = parse_envelope({"class": "hid", "weights": {"speed_mismatch": 0.9}})
        policy = create_default_policy()

        assert envelope.weight("speed_mismatch", policy.weights) == 0.9
        assert envelope.weight("power_below_floor", policy.weights) == 0.35


class TestParseRule:
    """Tests for keyword rule parsing."""

    def test_parse_literal(self) -> None:
        rule = parse_rule({"id": "r1", "pattern": "hid-generic", "severity": "MEDIUM"})

        assert rule.severity is Severity.MEDIUM
        assert rule.regex is False
        assert rule.search("HID-GENERIC 0003:16C0:0486.0001")

    def test_literal_pattern_is_escaped(self) -> None:
        """Literal patterns don't get regex semantics."""
        rule = parse_rule({"id": "r1", "pattern": "o.mg", "severity": "high"})

        assert rule.search("usb 1-2: Product: O.MG")
        assert not rule.search("usb 1-2: Product: OXMG")

    def test_invalid_regex(self) -> None:
        """Test that an invalid regex is rejected."""
        with pytest.raises(PolicyParseError, match="Invalid regex"):
            parse_rule({"id": "r1", "pattern": "([unclosed", "regex": True, "severity": "low"})

    def test_invalid_severity(self) -> None:
        with pytest.raises(PolicyParseError, match="Invalid severity"):
            parse_rule({"id": "r1", "pattern": "x", "severity": "critical"})

    def test_missing_id(self) -> None:
        with pytest.raises(PolicyParseError, match="'id'"):
            parse_rule({"pattern": "x", "severity": "low"})


class TestParseSignature:
    """Tests for power/speed signature parsing."""

    def test_parse_and_match(self) -> None:
        signature = parse_signature({
            "reason": "tiny power at high speed",
            "weight": 0.5,
            "power_below_ma": 20,
            "min_speed": "high",
        })

        assert isinstance(signature, PowerSpeedSignature)
        assert signature.matches(create_test_descriptor(max_power_ma=10, speed=LinkSpeed.HIGH))
        assert not signature.matches(create_test_descriptor(max_power_ma=10, speed=LinkSpeed.FULL))
        assert not signature.matches(create_test_descriptor(max_power_ma=100, speed=LinkSpeed.HIGH))

    def test_unknown_speed_never_matches_speed_condition(self) -> None:
        signature = parse_signature({"reason": "r", "weight": 0.1, "min_speed": "low"})

        assert not signature.matches(create_test_descriptor(speed=LinkSpeed.UNKNOWN))

    def test_requires_condition(self) -> None:
        with pytest.raises(PolicyParseError, match="at least one condition"):
            parse_signature({"reason": "r", "weight": 0.1})

    def test_weight_out_of_range(self) -> None:
        with pytest.raises(PolicyParseError, match="between 0 and 1"):
            parse_signature({"reason": "r", "weight": 2, "power_below_ma": 5})


class TestParsePolicy:
    """Tests for whole-policy parsing."""

    def test_parse_minimal(self) -> None:
        policy = parse_policy(minimal_policy())

        assert len(policy.envelopes) == 1
        assert len(policy.rules) == 1
        assert policy.signatures == []
        assert policy.weights.speed_mismatch == 0.45

    def test_global_weights(self) -> None:
        policy = parse_policy(minimal_policy(weights={"unknown_class": 0.3}))
        assert policy.weights.unknown_class == 0.3

    def test_unknown_weight_rejected(self) -> None:
        with pytest.raises(PolicyParseError, match="Unknown weights"):
            parse_policy(minimal_policy(weights={"bogus": 0.3}))

    def test_weight_out_of_range_rejected(self) -> None:
        with pytest.raises(PolicyParseError, match="between 0 and 1"):
            parse_policy(minimal_policy(weights={"unknown_class": 1.3}))

    def test_unknown_section_rejected(self) -> None:
        with pytest.raises(PolicyParseError, match="Unknown policy sections"):
            parse_policy(minimal_policy(actions=[]))

    def test_duplicate_envelope_class(self) -> None:
        """Two envelopes for one class are rejected."""
        data = minimal_policy(envelopes=[{"class": "hid"}, {"class": "0x03"}])

        with pytest.raises(PolicyParseError, match="Duplicate envelope"):
            parse_policy(data)

    def test_duplicate_rule_id(self) -> None:
        data = minimal_policy(rules=[
            {"id": "a", "pattern": "x", "severity": "low"},
            {"id": "a", "pattern": "y", "severity": "low"},
        ])

        with pytest.raises(PolicyParseError, match="Duplicate rule id"):
            parse_policy(data)

    def test_empty_rules_rejected(self) -> None:
        with pytest.raises(PolicyParseError, match="'rules'"):
            parse_policy(minimal_policy(rules=[]))

    def test_error_names_item(self) -> None:
        """Errors point at the offending list entry."""
        data = minimal_policy(envelopes=[{"class": "hid"}, {"max_power_ma": 5}])

        with pytest.raises(PolicyParseError, match="envelope 1"):
            parse_policy(data)

    def test_round_trip_to_dict(self) -> None:
        """A serialised policy parses back to the same policy."""
        policy = create_default_policy()
        assert parse_policy(policy.to_dict()) == policy


class TestLoadPolicy:
    """Tests for loading policy files."""

    def test_load_file(self, sample_policy: Path) -> None:
        policy = load_policy(sample_policy)
        assert len(policy.rules) == len(DEFAULT_POLICY["rules"])

    def test_missing_file(self, temp_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_policy(temp_dir / "missing.yaml")

    def test_empty_file(self, temp_dir: Path) -> None:
        path = temp_dir / "policy.yaml"
        path.write_text("")

        with pytest.raises(PolicyParseError, match="empty"):
            load_policy(path)

    def test_invalid_yaml(self, temp_dir: Path) -> None:
        path = temp_dir / "policy.yaml"
        path.write_text("rules: [")

        with pytest.raises(PolicyParseError, match="Invalid YAML"):
            load_policy(path)


class TestDefaultPolicy:
    """Tests for the built-in policy."""

    def test_default_policy_parses(self) -> None:
        policy = create_default_policy()

        assert len(policy.envelopes) == 7
        assert len(policy.signatures) == 2
        assert len(policy.rules) == 12

    def test_hid_envelope(self) -> None:
        hid = create_default_policy().envelope_for(USBClass.HID)

        assert hid is not None
        assert hid.min_power_ma == 20
        assert hid.max_power_ma == 400
        assert hid.speeds == frozenset({LinkSpeed.LOW, LinkSpeed.FULL})

    def test_default_policy_has_no_warnings(self) -> None:
        assert validate_policy(create_default_policy()) == []

    def test_resolve_missing_file_falls_back(self, temp_dir: Path) -> None:
        """A missing policy file falls back to the built-in policy."""
        policy = resolve_policy(temp_dir / "missing.yaml")
        assert policy == create_default_policy()

    def test_resolve_invalid_file_is_fatal(self, temp_dir: Path) -> None:
        """An invalid policy file is never silently replaced."""
        path = temp_dir / "policy.yaml"
        path.write_text("envelopes: []\nrules: []\n")

        with pytest.raises(PolicyParseError):
            resolve_policy(path)


class TestValidatePolicy:
    """Tests for policy warnings."""

    def test_unconstrained_envelope(self) -> None:
        policy = parse_policy(minimal_policy(envelopes=[{"class": "hub"}]))

        warnings = validate_policy(policy)
        assert any("no power or speed constraints" in w for w in warnings)

    def test_repeated_pattern(self) -> None:
        policy = parse_policy(minimal_policy(rules=[
            {"id": "a", "pattern": "USB disconnect", "severity": "low"},
            {"id": "b", "pattern": "usb disconnect", "severity": "medium"},
        ]))

        warnings = validate_policy(policy)
        assert any("repeats the pattern of rule a" in w for w in warnings)

    def test_zero_unknown_class_weight_rejected(self) -> None:
        """Unclassified devices always keep a nonzero baseline."""
        with pytest.raises(PolicyParseError, match="unknown_class' must be greater than 0"):
            parse_policy(minimal_policy(weights={"unknown_class": 0}))

    def test_zero_unknown_class_override_rejected(self) -> None:
        envelope = {"class": "hid", "weights": {"unknown_class": 0.0}}

        with pytest.raises(PolicyParseError, match="Error parsing envelope 0"):
            parse_policy(minimal_policy(envelopes=[envelope]))
