"""
Policy data models.

Scoring envelopes, power/speed signatures and keyword rules. Policies
are plain data: loaded and validated once at startup, then shared
read-only by the scorer and the keyword matcher.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from hidtrace.interceptor.constants import LinkSpeed, get_class_name
from hidtrace.interceptor.descriptors import DeviceDescriptor


class Severity(str, Enum):
    """How strongly a single log line suggests malicious activity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


# Names of the weighted checks the scorer performs
WEIGHT_NAMES = (
    "power_below_floor",
    "power_above_ceiling",
    "speed_mismatch",
    "unknown_class",
    "unknown_speed",
)


@dataclass(frozen=True)
class ScoringWeights:
    """Score increments for each violated expectation."""

    power_below_floor: float = 0.35
    power_above_ceiling: float = 0.3
    speed_mismatch: float = 0.45
    unknown_class: float = 0.15
    unknown_speed: float = 0.05

    def get(self, name: str) -> float:
        return getattr(self, name)

    def to_dict(self) -> dict[str, float]:
        return {name: self.get(name) for name in WEIGHT_NAMES}


@dataclass(frozen=True)
class ClassEnvelope:
    """
    Expected power and speed for one device class.

    None bounds are not checked. ``weights`` overrides the global
    weights for violations of this envelope.
    """

    device_class: int
    min_power_ma: int | None = None
    max_power_ma: int | None = None
    speeds: frozenset[LinkSpeed] | None = None
    weights: Mapping[str, float] = field(default_factory=dict)
    label: str = ""

    @property
    def name(self) -> str:
        return self.label or get_class_name(self.device_class)

    def weight(self, name: str, defaults: ScoringWeights) -> float:
        """Get the weight for a check, preferring this envelope's override."""
        return self.weights.get(name, defaults.get(name))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"class": f"0x{self.device_class:02x}"}
        if self.label:
            data["label"] = self.label
        if self.min_power_ma is not None:
            data["min_power_ma"] = self.min_power_ma
        if self.max_power_ma is not None:
            data["max_power_ma"] = self.max_power_ma
        if self.speeds is not None:
            data["speeds"] = sorted(s.value for s in self.speeds)
        if self.weights:
            data["weights"] = dict(self.weights)
        return data


@dataclass(frozen=True)
class PowerSpeedSignature:
    """
    Class-independent power/speed combination known from implant hardware.

    All specified conditions must hold (AND logic).
    """

    reason: str
    weight: float
    power_below_ma: int | None = None
    power_above_ma: int | None = None
    min_speed: LinkSpeed | None = None
    max_speed: LinkSpeed | None = None

    def matches(self, descriptor: DeviceDescriptor) -> bool:
        """Check whether a descriptor exhibits this signature."""
        if self.power_below_ma is not None and not descriptor.max_power_ma < self.power_below_ma:
            return False
        if self.power_above_ma is not None and not descriptor.max_power_ma > self.power_above_ma:
            return False
        if self.min_speed is not None or self.max_speed is not None:
            if descriptor.speed == LinkSpeed.UNKNOWN:
                return False
            if self.min_speed is not None and descriptor.speed.rank < self.min_speed.rank:
                return False
            if self.max_speed is not None and descriptor.speed.rank > self.max_speed.rank:
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"reason": self.reason, "weight": self.weight}
        if self.power_below_ma is not None:
            data["power_below_ma"] = self.power_below_ma
        if self.power_above_ma is not None:
            data["power_above_ma"] = self.power_above_ma
        if self.min_speed is not None:
            data["min_speed"] = self.min_speed.value
        if self.max_speed is not None:
            data["max_speed"] = self.max_speed.value
        return data


@dataclass(frozen=True)
class KeywordRule:
    """
    A (pattern, severity) suspicion rule for log lines.

    Patterns are matched case-insensitively, as a literal substring
    unless ``regex`` is set.
    """

    rule_id: str
    pattern: str
    severity: Severity
    regex: bool = False
    comment: str = ""
    compiled: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        source = self.pattern if self.regex else re.escape(self.pattern)
        object.__setattr__(self, "compiled", re.compile(source, re.IGNORECASE))

    def search(self, line: str) -> bool:
        return self.compiled.search(line) is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.rule_id,
            "pattern": self.pattern,
            "severity": self.severity.value,
        }
        if self.regex:
            data["regex"] = True
        if self.comment:
            data["comment"] = self.comment
        return data


@dataclass
class Policy:
    """
    Complete scoring and matching policy.

    Envelopes are consulted in order; keyword rules are kept in
    registration order (it breaks severity ties).
    """

    weights: ScoringWeights = field(default_factory=ScoringWeights)
    envelopes: list[ClassEnvelope] = field(default_factory=list)
    signatures: list[PowerSpeedSignature] = field(default_factory=list)
    rules: list[KeywordRule] = field(default_factory=list)

    def envelope_for(self, class_code: int) -> ClassEnvelope | None:
        for envelope in self.envelopes:
            if envelope.device_class == class_code:
                return envelope
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "weights": self.weights.to_dict(),
            "envelopes": [e.to_dict() for e in self.envelopes],
            "signatures": [s.to_dict() for s in self.signatures],
            "rules": [r.to_dict() for r in self.rules],
        }
