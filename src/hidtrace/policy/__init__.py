"""
Scoring and matching policy.

Per-class power/speed envelopes, implant signatures and keyword rules,
loaded once from YAML into validated structures.
"""

from hidtrace.policy.defaults import DEFAULT_POLICY, create_default_policy, resolve_policy
from hidtrace.policy.models import (
    ClassEnvelope,
    KeywordRule,
    Policy,
    PowerSpeedSignature,
    ScoringWeights,
    Severity,
)
from hidtrace.policy.parser import PolicyParseError, load_policy, parse_policy, validate_policy

__all__ = [
    # Defaults
    "DEFAULT_POLICY",
    "create_default_policy",
    "resolve_policy",
    # Models
    "ClassEnvelope",
    "KeywordRule",
    "Policy",
    "PowerSpeedSignature",
    "ScoringWeights",
    "Severity",
    # Parser
    "PolicyParseError",
    "load_policy",
    "parse_policy",
    "validate_policy",
]
