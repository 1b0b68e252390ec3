"""
Keyword matcher for kernel log lines.

Classifies each line against the policy's suspicion rules. The raw
line travels with the match for operator review and is never parsed
further.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from hidtrace.interceptor.events import LogLine
from hidtrace.policy.models import KeywordRule, Severity


@dataclass(frozen=True)
class LogMatch:
    """A log line that matched a suspicion rule."""

    rule_id: str
    pattern: str
    severity: Severity
    timestamp: datetime
    line: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "pattern": self.pattern,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "line": self.line,
        }


class KeywordMatcher:
    """
    Matches lines against rules in registration order.

    The highest-severity matching rule wins; among equal severities the
    earliest registered rule wins.
    """

    def __init__(self, rules: Iterable[KeywordRule]) -> None:
        self.rules = list(rules)
        self._lines = 0
        self._matches = 0

    def find_rule(self, text: str) -> KeywordRule | None:
        """Return the winning rule for a line of text, or None."""
        best: KeywordRule | None = None
        for rule in self.rules:
            if best is not None and rule.severity.rank <= best.severity.rank:
                continue
            if rule.search(text):
                best = rule
                if best.severity is Severity.HIGH:
                    break
        return best

    def match(self, line: LogLine) -> LogMatch | None:
        """
        Classify a log line.

        Args:
            line: Timestamped raw line

        Returns:
            LogMatch for the winning rule, or None when nothing matches
        """
        self._lines += 1
        rule = self.find_rule(line.text)
        if rule is None:
            return None
        self._matches += 1
        return LogMatch(
            rule_id=rule.rule_id,
            pattern=rule.pattern,
            severity=rule.severity,
            timestamp=line.timestamp,
            line=line.text,
        )

    def get_statistics(self) -> dict[str, int]:
        return {"lines": self._lines, "matches": self._matches}
