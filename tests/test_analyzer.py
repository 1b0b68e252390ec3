"""
Tests for descriptor anomaly scoring and the keyword matcher.
"""

from __future__ import annotations

from datetime import datetime

import pytest

from hidtrace.analyzer.keywords import KeywordMatcher
from hidtrace.analyzer.scoring import AnomalyScore, DescriptorScorer, get_risk_level
from hidtrace.interceptor.constants import LinkSpeed, USBClass
from hidtrace.interceptor.descriptors import DeviceDescriptor, create_test_descriptor
from hidtrace.interceptor.events import LogLine
from hidtrace.policy.models import KeywordRule, Policy, Severity
from hidtrace.policy.parser import parse_policy


class TestAnomalyScore:
    """Tests for AnomalyScore."""

    def test_range_enforced(self) -> None:
        with pytest.raises(ValueError):
            AnomalyScore(1.2)

    def test_dict_round_trip(self) -> None:
        score = AnomalyScore(0.45, ("speed mismatch",), "HID keyboard/mouse")
        assert AnomalyScore.from_dict(score.to_dict()) == score

    @pytest.mark.parametrize(
        "value,level",
        [(0.0, "LOW"), (0.25, "LOW"), (0.45, "MEDIUM"), (0.75, "HIGH"), (0.9, "CRITICAL")],
    )
    def test_risk_level(self, value: float, level: str) -> None:
        assert get_risk_level(value) == level
        assert AnomalyScore(value).level == level


class TestDescriptorScorer:
    """Tests for DescriptorScorer against the default policy."""

    def test_normal_keyboard_scores_zero(
        self, scorer: DescriptorScorer, normal_keyboard: DeviceDescriptor
    ) -> None:
        """A keyboard inside its envelope has no reasons."""
        score = scorer.score(normal_keyboard)

        assert score.score == 0.0
        assert score.reasons == ()
        assert score.classification == "HID keyboard/mouse"

    def test_high_speed_hid(
        self, scorer: DescriptorScorer, implant_keyboard: DeviceDescriptor
    ) -> None:
        """A High-speed HID device is a speed mismatch."""
        score = scorer.score(implant_keyboard)

        assert score.score == 0.45
        assert len(score.reasons) == 1
        assert score.reasons[0].startswith("speed mismatch for claimed class HID keyboard/mouse")
        assert "expected low, full" in score.reasons[0]

    def test_power_and_speed_violations_add(self, scorer: DescriptorScorer) -> None:
        """Each violated bound adds its weight."""
        descriptor = create_test_descriptor(max_power_ma=500, speed=LinkSpeed.HIGH)
        score = scorer.score(descriptor)

        assert score.score == 0.75
        assert score.reasons[0] == "power draw above HID keyboard/mouse ceiling (500 mA > 400 mA)"
        assert score.reasons[1].startswith("speed mismatch")

    def test_power_below_floor_with_signature(self, scorer: DescriptorScorer) -> None:
        """Floor violation, speed mismatch and signature saturate at 1.0."""
        descriptor = create_test_descriptor(max_power_ma=10, speed=LinkSpeed.HIGH)
        score = scorer.score(descriptor)

        assert score.score == 1.0
        assert score.reasons == (
            "power draw below HID keyboard/mouse floor (10 mA < 20 mA)",
            "speed mismatch for claimed class HID keyboard/mouse (high, expected low, full)",
            "power draw below 20 mA at high speed or faster",
        )

    def test_interface_class_resolution(self, scorer: DescriptorScorer) -> None:
        """Class 0 devices are judged by their interface class."""
        descriptor = create_test_descriptor(
            device_class=USBClass.PER_INTERFACE,
            interface_classes=(USBClass.HID,),
            speed=LinkSpeed.HIGH,
        )
        score = scorer.score(descriptor)

        assert score.classification == "HID keyboard/mouse"
        assert score.score == 0.45

    def test_interface_resolution_follows_policy_order(self, scorer: DescriptorScorer) -> None:
        """With several interface classes the first envelope in policy order wins."""
        descriptor = create_test_descriptor(
            device_class=0,
            interface_classes=(USBClass.MASS_STORAGE, USBClass.HID),
        )
        envelope = scorer.resolve_envelope(descriptor)

        assert envelope is not None
        assert envelope.device_class == USBClass.HID

    def test_unknown_class(self, scorer: DescriptorScorer) -> None:
        descriptor = create_test_descriptor(device_class=USBClass.VENDOR_SPECIFIC)
        score = scorer.score(descriptor)

        assert score.classification == "unknown"
        assert score.score == 0.15
        assert score.reasons == ("unknown device classification (Vendor Specific)",)

    def test_no_interfaces(self, scorer: DescriptorScorer) -> None:
        descriptor = create_test_descriptor(device_class=0)
        score = scorer.score(descriptor)

        assert score.reasons == ("unknown device classification (no interfaces)",)

    def test_unknown_speed(self, scorer: DescriptorScorer) -> None:
        """Unknown speed skips the speed check and adds its own weight."""
        descriptor = create_test_descriptor(speed=LinkSpeed.UNKNOWN)
        score = scorer.score(descriptor)

        assert score.score == 0.05
        assert score.reasons == ("negotiated link speed unknown",)

    def test_envelope_weight_override(self) -> None:
        policy = parse_policy({
            "envelopes": [{"class": "hid", "speeds": ["low", "full"], "weights": {"speed_mismatch": 0.9}}],
            "rules": [{"id": "r", "pattern": "x", "severity": "low"}],
        })
        score = DescriptorScorer(policy).score(create_test_descriptor(speed=LinkSpeed.HIGH))

        assert score.score == 0.9

    def test_deterministic(self, scorer: DescriptorScorer, implant_keyboard: DeviceDescriptor) -> None:
        assert scorer.score(implant_keyboard) == scorer.score(implant_keyboard)


class TestKeywordMatcher:
    """Tests for KeywordMatcher."""

    def _line(self, text: str, t0: datetime) -> LogLine:
        return LogLine(timestamp=t0, text=text)

    def test_default_rules(self, policy: Policy, t0: datetime) -> None:
        matcher = KeywordMatcher(policy.rules)
        match = matcher.match(
            self._line("usb 1-2: new high-speed USB device number 5 using xhci_hcd", t0)
        )

        assert match is not None
        assert match.rule_id == "new-high-speed"
        assert match.severity is Severity.HIGH
        assert match.timestamp == t0
        assert match.line.startswith("usb 1-2")

    def test_no_match(self, policy: Policy, t0: datetime) -> None:
        matcher = KeywordMatcher(policy.rules)

        assert matcher.match(self._line("EXT4-fs (sda1): mounted filesystem", t0)) is None
        assert matcher.get_statistics() == {"lines": 1, "matches": 0}

    def test_case_insensitive(self, policy: Policy, t0: datetime) -> None:
        matcher = KeywordMatcher(policy.rules)
        match = matcher.match(self._line("USB 1-2: NEW HIGH-SPEED USB DEVICE", t0))

        assert match is not None
        assert match.rule_id == "new-high-speed"

    def test_highest_severity_wins(self, t0: datetime) -> None:
        """A later high rule beats an earlier low rule."""
        matcher = KeywordMatcher([
            KeywordRule("low-rule", "usb", Severity.LOW),
            KeywordRule("high-rule", "teensy", Severity.HIGH),
        ])
        match = matcher.match(self._line("usb 1-2: Product: Teensy Keyboard", t0))

        assert match is not None
        assert match.rule_id == "high-rule"

    def test_tie_goes_to_earliest(self, t0: datetime) -> None:
        matcher = KeywordMatcher([
            KeywordRule("first", "hid-generic", Severity.MEDIUM),
            KeywordRule("second", "keyboard", Severity.MEDIUM),
        ])
        match = matcher.match(self._line("hid-generic 0003:16C0:0486.0001: input: Keyboard", t0))

        assert match is not None
        assert match.rule_id == "first"

    def test_regex_rule(self, policy: Policy, t0: datetime) -> None:
        matcher = KeywordMatcher(policy.rules)
        match = matcher.match(self._line("usb 3-1: device descriptor read/64, error -71", t0))

        assert match is not None
        assert match.rule_id == "descriptor-read-error"
        assert match.severity is Severity.MEDIUM
