"""
Policy file parser.

Parses YAML policy files into validated Policy objects. Parsing is
all-or-nothing: any invalid envelope, signature or rule rejects the
whole policy.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from hidtrace.config import ConfigurationError
from hidtrace.interceptor.constants import LinkSpeed, parse_class_code
from hidtrace.policy.models import (
    WEIGHT_NAMES,
    ClassEnvelope,
    KeywordRule,
    Policy,
    PowerSpeedSignature,
    ScoringWeights,
    Severity,
)


class PolicyParseError(ConfigurationError):
    """Error parsing policy file."""

    pass


def load_policy(path: str | Path) -> Policy:
    """
    Load policy from YAML file.

    Args:
        path: Path to policy YAML file

    Returns:
        Policy object with parsed envelopes and rules

    Raises:
        FileNotFoundError: If file doesn't exist
        PolicyParseError: If file contains invalid policy
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise PolicyParseError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        raise PolicyParseError(f"Policy file is empty: {path}")

    return parse_policy(data)


def parse_policy(data: dict[str, Any]) -> Policy:
    """
    Parse policy from dictionary.

    Args:
        data: Dictionary with policy data

    Returns:
        Policy object
    """
    if not isinstance(data, dict):
        raise PolicyParseError("Policy must be a dictionary")

    unknown = set(data) - {"weights", "envelopes", "signatures", "rules"}
    if unknown:
        raise PolicyParseError(f"Unknown policy sections: {', '.join(sorted(unknown))}")

    weights = parse_weights(data.get("weights") or {})

    envelopes_data = data.get("envelopes")
    if not isinstance(envelopes_data, list) or not envelopes_data:
        raise PolicyParseError("'envelopes' must be a non-empty list")
    envelopes = []
    seen_classes: set[int] = set()
    for i, envelope_data in enumerate(envelopes_data):
        try:
            envelope = parse_envelope(envelope_data)
        except PolicyParseError as e:
            raise PolicyParseError(f"Error parsing envelope {i}: {e}") from e
        if envelope.device_class in seen_classes:
            raise PolicyParseError(
                f"Duplicate envelope for class 0x{envelope.device_class:02x}"
            )
        seen_classes.add(envelope.device_class)
        envelopes.append(envelope)

    signatures_data = data.get("signatures") or []
    if not isinstance(signatures_data, list):
        raise PolicyParseError("'signatures' must be a list")
    signatures = []
    for i, signature_data in enumerate(signatures_data):
        try:
            signatures.append(parse_signature(signature_data))
        except PolicyParseError as e:
            raise PolicyParseError(f"Error parsing signature {i}: {e}") from e

    rules_data = data.get("rules")
    if not isinstance(rules_data, list) or not rules_data:
        raise PolicyParseError("'rules' must be a non-empty list")
    rules = []
    seen_ids: set[str] = set()
    for i, rule_data in enumerate(rules_data):
        try:
            rule = parse_rule(rule_data)
        except PolicyParseError as e:
            raise PolicyParseError(f"Error parsing rule {i}: {e}") from e
        if rule.rule_id in seen_ids:
            raise PolicyParseError(f"Duplicate rule id: {rule.rule_id}")
        seen_ids.add(rule.rule_id)
        rules.append(rule)

    return Policy(
        weights=weights,
        envelopes=envelopes,
        signatures=signatures,
        rules=rules,
    )


def _weight(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PolicyParseError(f"{what} must be a number")
    if not 0 <= value <= 1:
        raise PolicyParseError(f"{what} must be between 0 and 1, got {value}")
    return float(value)


def _weight_overrides(data: Any) -> dict[str, float]:
    if not isinstance(data, dict):
        raise PolicyParseError("'weights' must be a dictionary")
    unknown = set(data) - set(WEIGHT_NAMES)
    if unknown:
        raise PolicyParseError(f"Unknown weights: {', '.join(sorted(unknown))}")
    weights = {name: _weight(value, f"Weight '{name}'") for name, value in data.items()}
    # Unclassified devices must never score silently zero
    if weights.get("unknown_class", 1) == 0:
        raise PolicyParseError("Weight 'unknown_class' must be greater than 0")
    return weights


def parse_weights(data: Any) -> ScoringWeights:
    """Parse the global score weights."""
    return ScoringWeights(**_weight_overrides(data))


def _power(value: Any, what: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise PolicyParseError(f"{what} must be a non-negative integer (mA)")
    return value


def _speed(value: Any) -> LinkSpeed:
    try:
        return LinkSpeed.from_name(value)
    except ValueError as e:
        raise PolicyParseError(str(e)) from e


def parse_envelope(data: Any) -> ClassEnvelope:
    """
    Parse a single class envelope.

    Args:
        data: Dictionary with envelope data

    Returns:
        ClassEnvelope object
    """
    if not isinstance(data, dict):
        raise PolicyParseError("Envelope must be a dictionary")

    if "class" not in data:
        raise PolicyParseError("Envelope must have 'class' field")
    try:
        device_class = parse_class_code(data["class"])
    except ValueError as e:
        raise PolicyParseError(str(e)) from e

    min_power = _power(data.get("min_power_ma"), "min_power_ma")
    max_power = _power(data.get("max_power_ma"), "max_power_ma")
    if min_power is not None and max_power is not None and min_power > max_power:
        raise PolicyParseError(
            f"min_power_ma ({min_power}) exceeds max_power_ma ({max_power})"
        )

    speeds = None
    if data.get("speeds") is not None:
        speeds_data = data["speeds"]
        if not isinstance(speeds_data, list) or not speeds_data:
            raise PolicyParseError("'speeds' must be a non-empty list")
        speeds = frozenset(_speed(s) for s in speeds_data)

    return ClassEnvelope(
        device_class=device_class,
        min_power_ma=min_power,
        max_power_ma=max_power,
        speeds=speeds,
        weights=_weight_overrides(data.get("weights") or {}),
        label=str(data.get("label", "")),
    )


def parse_signature(data: Any) -> PowerSpeedSignature:
    """Parse a class-independent power/speed signature."""
    if not isinstance(data, dict):
        raise PolicyParseError("Signature must be a dictionary")
    reason = data.get("reason")
    if not reason:
        raise PolicyParseError("Signature must have a 'reason'")
    if "weight" not in data:
        raise PolicyParseError("Signature must have a 'weight'")

    signature = PowerSpeedSignature(
        reason=str(reason),
        weight=_weight(data["weight"], "Signature weight"),
        power_below_ma=_power(data.get("power_below_ma"), "power_below_ma"),
        power_above_ma=_power(data.get("power_above_ma"), "power_above_ma"),
        min_speed=_speed(data["min_speed"]) if data.get("min_speed") else None,
        max_speed=_speed(data["max_speed"]) if data.get("max_speed") else None,
    )
    if (
        signature.power_below_ma is None
        and signature.power_above_ma is None
        and signature.min_speed is None
        and signature.max_speed is None
    ):
        raise PolicyParseError("Signature must have at least one condition")
    return signature


def parse_rule(data: Any) -> KeywordRule:
    """
    Parse a single keyword rule from dictionary.

    Args:
        data: Dictionary with rule data

    Returns:
        KeywordRule object
    """
    if not isinstance(data, dict):
        raise PolicyParseError("Rule must be a dictionary")

    rule_id = data.get("id")
    if not rule_id:
        raise PolicyParseError("Rule must have 'id' field")

    pattern = data.get("pattern")
    if not isinstance(pattern, str) or not pattern:
        raise PolicyParseError("Rule must have a non-empty 'pattern'")

    severity_str = data.get("severity")
    if severity_str is None:
        raise PolicyParseError("Rule must have 'severity' field")
    try:
        severity = Severity(str(severity_str).lower())
    except ValueError:
        raise PolicyParseError(f"Invalid severity: {severity_str}") from None

    regex = bool(data.get("regex", False))
    if regex:
        try:
            re.compile(pattern)
        except re.error as e:
            raise PolicyParseError(f"Invalid regex '{pattern}': {e}") from e

    return KeywordRule(
        rule_id=str(rule_id),
        pattern=pattern,
        severity=severity,
        regex=regex,
        comment=str(data.get("comment", "")),
    )


def validate_policy(policy: Policy) -> list[str]:
    """
    Return warnings for a parsed policy.

    Parsing already rejects invalid content; these are suspicious but
    legal configurations.

    Args:
        policy: Policy to validate

    Returns:
        List of warning messages
    """
    warnings: list[str] = []

    for envelope in policy.envelopes:
        if (
            envelope.min_power_ma is None
            and envelope.max_power_ma is None
            and envelope.speeds is None
        ):
            warnings.append(
                f"Warning: Envelope for {envelope.name} has no power or speed constraints"
            )

    seen: dict[tuple[str, bool], str] = {}
    for rule in policy.rules:
        key = (rule.pattern.lower(), rule.regex)
        if key in seen:
            warnings.append(
                f"Warning: Rule {rule.rule_id} repeats the pattern of rule {seen[key]}"
            )
        else:
            seen[key] = rule.rule_id

    return warnings
