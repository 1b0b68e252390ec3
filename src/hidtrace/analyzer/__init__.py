"""
Evidence analyzers.

Descriptor anomaly scoring and kernel log keyword matching.
"""

from hidtrace.analyzer.keywords import KeywordMatcher, LogMatch
from hidtrace.analyzer.scoring import (
    AnomalyScore,
    DescriptorScorer,
    get_risk_level,
)

__all__ = [
    # Keywords
    "KeywordMatcher",
    "LogMatch",
    # Scoring
    "AnomalyScore",
    "DescriptorScorer",
    "get_risk_level",
]
