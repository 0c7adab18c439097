from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from .schema import Finding, RuleType, Severity


@dataclass(frozen=True)
class FindingSummary:
    total: int
    by_severity: Dict[str, int] = field(default_factory=dict)
    by_rule_type: Dict[str, int] = field(default_factory=dict)

    @property
    def high(self) -> int:
        return self.by_severity.get(Severity.HIGH.label, 0)

    @property
    def medium(self) -> int:
        return self.by_severity.get(Severity.MEDIUM.label, 0)

    @property
    def low(self) -> int:
        return self.by_severity.get(Severity.LOW.label, 0)

    def as_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "by_rule_type": dict(self.by_rule_type),
        }


def _sort_key(finding: Finding) -> Tuple[int, str, str]:
    return (-int(finding.severity), finding.expense_id, finding.rule_type.value)


def dedupe_findings(findings: Iterable[Finding]) -> List[Finding]:
    """Collapse to one Finding per (expense, rule type), keeping the most severe."""
    best: Dict[Tuple[str, RuleType], Finding] = {}
    for finding in findings:
        current = best.get(finding.key)
        if current is None or finding.severity > current.severity:
            best[finding.key] = finding
    return sorted(best.values(), key=_sort_key)


def summarize_findings(findings: Iterable[Finding]) -> FindingSummary:
    by_severity = {severity.label: 0 for severity in Severity}
    by_rule_type: Dict[str, int] = {}
    total = 0
    for finding in findings:
        total += 1
        by_severity[finding.severity.label] += 1
        by_rule_type[finding.rule_type.value] = by_rule_type.get(finding.rule_type.value, 0) + 1
    return FindingSummary(total=total, by_severity=by_severity, by_rule_type=by_rule_type)
