from datetime import date
from decimal import Decimal

from spendwatch.app.detection import RuleType, Severity, dedupe_findings, summarize_findings
from spendwatch.app.detection.schema import Finding, finding_id


def _finding(expense_id: str, rule_type: RuleType, severity: Severity, details: str = "") -> Finding:
    return Finding(
        id=finding_id(expense_id, rule_type),
        expense_id=expense_id,
        rule_type=rule_type,
        severity=severity,
        description=rule_type.value,
        details=details,
        amount=Decimal("10.00"),
        expense_date=date(2024, 3, 5),
        expense_description="Lunch",
    )


def test_dedupe_keeps_highest_severity_per_expense_and_rule():
    findings = [
        _finding("e1", RuleType.HIGH_AMOUNT, Severity.LOW, "low"),
        _finding("e1", RuleType.HIGH_AMOUNT, Severity.HIGH, "high"),
        _finding("e1", RuleType.HIGH_AMOUNT, Severity.MEDIUM, "medium"),
        _finding("e1", RuleType.WEEKEND_EXPENSE, Severity.LOW),
    ]

    deduped = dedupe_findings(findings)

    assert [(f.rule_type, f.details) for f in deduped] == [
        (RuleType.HIGH_AMOUNT, "high"),
        (RuleType.WEEKEND_EXPENSE, ""),
    ]


def test_dedupe_keeps_first_on_equal_severity():
    deduped = dedupe_findings(
        [
            _finding("e1", RuleType.DUPLICATE, Severity.HIGH, "first"),
            _finding("e1", RuleType.DUPLICATE, Severity.HIGH, "second"),
        ]
    )

    assert len(deduped) == 1
    assert deduped[0].details == "first"


def test_dedupe_orders_by_severity_then_expense_then_rule():
    deduped = dedupe_findings(
        [
            _finding("b", RuleType.ROUND_AMOUNT, Severity.LOW),
            _finding("a", RuleType.WEEKEND_EXPENSE, Severity.LOW),
            _finding("a", RuleType.ROUND_AMOUNT, Severity.LOW),
            _finding("z", RuleType.DUPLICATE, Severity.HIGH),
            _finding("c", RuleType.THRESHOLD_GAMING, Severity.MEDIUM),
        ]
    )

    assert [f.id for f in deduped] == [
        "duplicate:z",
        "threshold_gaming:c",
        "round_amount:a",
        "weekend_expense:a",
        "round_amount:b",
    ]


def test_summary_matches_findings():
    findings = dedupe_findings(
        [
            _finding("e1", RuleType.DUPLICATE, Severity.HIGH),
            _finding("e2", RuleType.DUPLICATE, Severity.HIGH),
            _finding("e2", RuleType.RAPID_SUCCESSION, Severity.MEDIUM),
            _finding("e3", RuleType.WEEKEND_EXPENSE, Severity.LOW),
        ]
    )

    summary = summarize_findings(findings)

    assert summary.total == len(findings) == 4
    assert (summary.high, summary.medium, summary.low) == (2, 1, 1)
    assert summary.high + summary.medium + summary.low == summary.total
    assert summary.by_rule_type == {"duplicate": 2, "rapid_succession": 1, "weekend_expense": 1}
    assert summary.as_dict()["high"] == 2


def test_summary_of_nothing_is_zero():
    summary = summarize_findings([])

    assert summary.total == 0
    assert summary.by_severity == {"low": 0, "medium": 0, "high": 0}
    assert summary.by_rule_type == {}


def test_severity_parse_and_order():
    assert Severity.parse(" High ") is Severity.HIGH
    assert Severity.LOW < Severity.MEDIUM < Severity.HIGH
    assert max([Severity.LOW, Severity.HIGH, Severity.MEDIUM]) is Severity.HIGH
