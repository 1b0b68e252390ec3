"""
Built-in default policy.

Used when no policy file is configured. The thresholds are illustrative
starting points for operators to tune, not contracts.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from hidtrace.policy.models import Policy
from hidtrace.policy.parser import load_policy, parse_policy


logger = logging.getLogger(__name__)


DEFAULT_POLICY: dict[str, Any] = {
    "weights": {
        "power_below_floor": 0.35,
        "power_above_ceiling": 0.3,
        "speed_mismatch": 0.45,
        "unknown_class": 0.15,
        "unknown_speed": 0.05,
    },
    "envelopes": [
        {
            "class": "hid",
            "label": "HID keyboard/mouse",
            "min_power_ma": 20,
            "max_power_ma": 400,
            "speeds": ["low", "full"],
        },
        {
            "class": "mass_storage",
            "max_power_ma": 900,
            "speeds": ["full", "high", "super", "super_plus"],
        },
        {
            "class": "hub",
            "max_power_ma": 500,
        },
        {
            "class": "audio",
            "max_power_ma": 500,
            "speeds": ["full", "high"],
        },
        {
            "class": "video",
            "max_power_ma": 900,
            "speeds": ["high", "super", "super_plus"],
        },
        {
            "class": "cdc",
            "max_power_ma": 500,
            "speeds": ["full", "high"],
        },
        {
            "class": "wireless",
            "max_power_ma": 500,
            "speeds": ["full", "high"],
        },
    ],
    "signatures": [
        {
            "reason": "power draw below 20 mA at high speed or faster",
            "weight": 0.5,
            "power_below_ma": 20,
            "min_speed": "high",
        },
        {
            "reason": "power draw above 400 mA at full speed",
            "weight": 0.4,
            "power_above_ma": 400,
            "min_speed": "full",
            "max_speed": "full",
        },
    ],
    "rules": [
        {
            "id": "injection-tooling",
            "pattern": r"(rubber.?ducky|bash.?bunny|digispark|teensy|p4wnp1|o\.mg)",
            "regex": True,
            "severity": "high",
            "comment": "Product string of known injection hardware",
        },
        {
            "id": "new-high-speed",
            "pattern": "new high-speed",
            "severity": "high",
            "comment": "High-speed enumeration (unexpected for keyboards)",
        },
        {
            "id": "hid-keyboard",
            "pattern": r"input: .*keyboard",
            "regex": True,
            "severity": "medium",
            "comment": "Keyboard input device registered",
        },
        {
            "id": "hid-generic",
            "pattern": "hid-generic",
            "severity": "medium",
        },
        {
            "id": "descriptor-read-error",
            "pattern": r"device descriptor read/\w+, error",
            "regex": True,
            "severity": "medium",
            "comment": "Enumeration retry churn",
        },
        {
            "id": "enumerate-failure",
            "pattern": "unable to enumerate USB device",
            "severity": "medium",
        },
        {
            "id": "not-accepting-address",
            "pattern": "not accepting address",
            "severity": "medium",
        },
        {
            "id": "device-reset",
            "pattern": r"reset (low|full|high|super)-?speed",
            "regex": True,
            "severity": "medium",
        },
        {
            "id": "over-current",
            "pattern": "over-current",
            "severity": "medium",
        },
        {
            "id": "new-low-full-speed",
            "pattern": r"new (low|full)-speed USB device",
            "regex": True,
            "severity": "low",
        },
        {
            "id": "new-superspeed",
            "pattern": "new SuperSpeed",
            "severity": "low",
        },
        {
            "id": "usb-disconnect",
            "pattern": "USB disconnect",
            "severity": "low",
        },
    ],
}


def create_default_policy() -> Policy:
    """Build the built-in policy through the same validation as policy files."""
    return parse_policy(DEFAULT_POLICY)


def resolve_policy(path: str | Path | None) -> Policy:
    """
    Load the configured policy file, or the built-in policy if it's absent.

    A policy file that exists but is invalid is fatal: it is never
    partially applied or silently replaced.

    Raises:
        PolicyParseError: If the file contains an invalid policy
    """
    if path is not None and Path(path).exists():
        policy = load_policy(path)
        logger.info(
            "Loaded policy %s: %d envelopes, %d signatures, %d rules",
            path, len(policy.envelopes), len(policy.signatures), len(policy.rules),
        )
        return policy
    logger.warning("Policy file not found: %s, using built-in default policy", path)
    return create_default_policy()
