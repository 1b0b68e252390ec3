"""
Descriptor anomaly scoring.

Judges a device's advertised power draw and negotiated link speed
against the envelope expected for the class it claims. Implants that
pose as keyboards rarely get both right: a microcontroller with a
High-speed PHY and a near-zero power budget does not look like a
keyboard.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from hidtrace.interceptor.constants import LinkSpeed, get_class_name
from hidtrace.interceptor.descriptors import DeviceDescriptor
from hidtrace.policy.models import ClassEnvelope, Policy


@dataclass(frozen=True)
class AnomalyScore:
    """Score in [0, 1] with the reasons that produced it, in check order."""

    score: float
    reasons: tuple[str, ...] = ()
    classification: str = "unknown"

    def __post_init__(self) -> None:
        if not 0 <= self.score <= 1:
            raise ValueError(f"score must be 0-1, got {self.score}")

    @property
    def level(self) -> str:
        return get_risk_level(self.score)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "score": self.score,
            "reasons": list(self.reasons),
            "classification": self.classification,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnomalyScore:
        return cls(
            score=float(data["score"]),
            reasons=tuple(data.get("reasons", ())),
            classification=data.get("classification", "unknown"),
        )


# Risk level thresholds
THRESHOLD_LOW = 0.25
THRESHOLD_MEDIUM = 0.5
THRESHOLD_HIGH = 0.75


def get_risk_level(score: float) -> str:
    """
    Get human-readable risk level from score.

    Args:
        score: Score 0-1

    Returns:
        Risk level string
    """
    if score <= THRESHOLD_LOW:
        return "LOW"
    elif score <= THRESHOLD_MEDIUM:
        return "MEDIUM"
    elif score <= THRESHOLD_HIGH:
        return "HIGH"
    else:
        return "CRITICAL"


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass
class _Tally:
    total: float = 0.0
    reasons: list[str] = field(default_factory=list)

    def add(self, weight: float, reason: str) -> None:
        self.total += weight
        self.reasons.append(reason)


class DescriptorScorer:
    """
    Scores descriptors against a policy's class envelopes and signatures.

    Pure: the same descriptor and policy always give the same score.
    """

    def __init__(self, policy: Policy) -> None:
        self.policy = policy

    def resolve_envelope(self, descriptor: DeviceDescriptor) -> ClassEnvelope | None:
        """
        Find the envelope for the class a device claims.

        A nonzero device class is used as-is. Class 0x00 defers to the
        interface classes: the first envelope (in policy order) whose
        class appears among them wins.
        """
        if descriptor.device_class != 0:
            return self.policy.envelope_for(descriptor.device_class)
        candidates = descriptor.candidate_classes()
        for envelope in self.policy.envelopes:
            if envelope.device_class in candidates:
                return envelope
        return None

    def score(self, descriptor: DeviceDescriptor) -> AnomalyScore:
        """
        Score a descriptor.

        Args:
            descriptor: Descriptor to judge

        Returns:
            AnomalyScore clamped to [0, 1]
        """
        weights = self.policy.weights
        tally = _Tally()
        power = descriptor.max_power_ma
        speed = descriptor.speed

        envelope = self.resolve_envelope(descriptor)
        if envelope is None:
            classification = "unknown"
            claimed = ", ".join(get_class_name(c) for c in descriptor.candidate_classes())
            tally.add(
                weights.unknown_class,
                f"unknown device classification ({claimed or 'no interfaces'})",
            )
        else:
            classification = envelope.name
            if envelope.min_power_ma is not None and power < envelope.min_power_ma:
                tally.add(
                    envelope.weight("power_below_floor", weights),
                    f"power draw below {envelope.name} floor "
                    f"({power} mA < {envelope.min_power_ma} mA)",
                )
            if envelope.max_power_ma is not None and power > envelope.max_power_ma:
                tally.add(
                    envelope.weight("power_above_ceiling", weights),
                    f"power draw above {envelope.name} ceiling "
                    f"({power} mA > {envelope.max_power_ma} mA)",
                )
            if (
                envelope.speeds is not None
                and speed != LinkSpeed.UNKNOWN
                and speed not in envelope.speeds
            ):
                allowed = ", ".join(
                    s.value for s in sorted(envelope.speeds, key=lambda s: s.rank)
                )
                tally.add(
                    envelope.weight("speed_mismatch", weights),
                    f"speed mismatch for claimed class {envelope.name} "
                    f"({speed.value}, expected {allowed})",
                )

        for signature in self.policy.signatures:
            if signature.matches(descriptor):
                tally.add(signature.weight, signature.reason)

        if speed == LinkSpeed.UNKNOWN:
            tally.add(weights.unknown_speed, "negotiated link speed unknown")

        return AnomalyScore(
            score=round(clamp(tally.total), 6),
            reasons=tuple(tally.reasons),
            classification=classification,
        )
