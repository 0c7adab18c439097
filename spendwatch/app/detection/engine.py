"""
Expense anomaly detection.

Pure: no database access, no clock reads, no global state. Everything a rule
needs is either on the ExpenseRecord, on the DetectionConfig, or in the
groupings precomputed once per call by _build_context().
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from statistics import mean, pstdev
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .schema import DetectionConfig, ExpenseRecord, Finding, RuleType, Severity, finding_id
from .scoring import dedupe_findings

UNCATEGORIZED = "uncategorized"
MIN_CATEGORY_SAMPLE = 3
WEEKEND_DAYS = {5: "Saturday", 6: "Sunday"}


@dataclass(frozen=True)
class CategoryStats:
    count: int
    mean: Decimal
    std_dev: Decimal


@dataclass(frozen=True)
class SubmitterTimeline:
    expenses: Tuple[ExpenseRecord, ...]
    times: Tuple[datetime, ...]


@dataclass(frozen=True)
class ScanContext:
    config: DetectionConfig
    now: datetime
    category_stats: Dict[str, CategoryStats]
    duplicates: Dict[Tuple[Decimal, str, object], Tuple[str, ...]]
    timelines: Dict[str, SubmitterTimeline]


def _category_key(expense: ExpenseRecord) -> str:
    return expense.category_id or UNCATEGORIZED


def _duplicate_key(expense: ExpenseRecord) -> Tuple[Decimal, str, object]:
    return (Decimal(expense.amount), expense.description.lower(), expense.expense_date)


def _money(value: Decimal) -> str:
    return f"${Decimal(value):,.2f}"


def _build_context(
    expenses: Sequence[ExpenseRecord],
    config: DetectionConfig,
    now: datetime,
) -> ScanContext:
    amounts_by_category: Dict[str, List[Decimal]] = defaultdict(list)
    ids_by_duplicate_key: Dict[Tuple[Decimal, str, object], List[str]] = defaultdict(list)
    by_submitter: Dict[str, List[ExpenseRecord]] = defaultdict(list)

    for expense in expenses:
        amounts_by_category[_category_key(expense)].append(Decimal(expense.amount))
        ids_by_duplicate_key[_duplicate_key(expense)].append(expense.id)
        if expense.submitter_id:
            by_submitter[expense.submitter_id].append(expense)

    category_stats: Dict[str, CategoryStats] = {}
    for key, amounts in amounts_by_category.items():
        if len(amounts) < MIN_CATEGORY_SAMPLE:
            continue
        category_stats[key] = CategoryStats(
            count=len(amounts),
            mean=mean(amounts),
            std_dev=pstdev(amounts),
        )

    timelines: Dict[str, SubmitterTimeline] = {}
    for submitter_id, rows in by_submitter.items():
        ordered = tuple(sorted(rows, key=lambda e: (e.created_at, e.id)))
        timelines[submitter_id] = SubmitterTimeline(
            expenses=ordered,
            times=tuple(e.created_at for e in ordered),
        )

    return ScanContext(
        config=config,
        now=now,
        category_stats=category_stats,
        duplicates={key: tuple(ids) for key, ids in ids_by_duplicate_key.items() if len(ids) > 1},
        timelines=timelines,
    )


def _finding(
    expense: ExpenseRecord,
    rule_type: RuleType,
    severity: Severity,
    description: str,
    details: str,
    related: Iterable[str] = (),
) -> Finding:
    return Finding(
        id=finding_id(expense.id, rule_type),
        expense_id=expense.id,
        rule_type=rule_type,
        severity=severity,
        description=description,
        details=details,
        amount=Decimal(expense.amount),
        expense_date=expense.expense_date,
        expense_description=expense.description,
        category_name=expense.category_name,
        submitter_name=expense.submitter_name,
        department=expense.department,
        related_expense_ids=tuple(sorted(related)),
    )


# -------------------------
# Rules
# -------------------------

def high_amount_rule(expense: ExpenseRecord, ctx: ScanContext) -> Optional[Finding]:
    """
    Formula:
      fires when amount > mean + std_dev * (threshold_percent / 100)
      and amount >= min_high_amount, for categories with at least 3 expenses.
      severity: high above 5x mean, medium above 3x mean, else low.
    """
    stats = ctx.category_stats.get(_category_key(expense))
    if stats is None:
        return None

    amount = Decimal(expense.amount)
    cutoff = stats.mean + stats.std_dev * ctx.config.high_amount_multiplier
    if amount <= cutoff or amount < ctx.config.min_high_amount:
        return None

    if amount > stats.mean * 5:
        severity = Severity.HIGH
    elif amount > stats.mean * 3:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW

    pct_above = (amount / stats.mean - 1) * 100
    return _finding(
        expense,
        RuleType.HIGH_AMOUNT,
        severity,
        "Unusually high amount",
        f"This expense of {_money(amount)} is {pct_above:.0f}% above the category "
        f"average of {_money(stats.mean)} (cutoff {_money(cutoff)}, {stats.count} expenses)",
    )


def duplicate_rule(expense: ExpenseRecord, ctx: ScanContext) -> Optional[Finding]:
    group = ctx.duplicates.get(_duplicate_key(expense))
    if not group:
        return None
    others = [expense_id for expense_id in group if expense_id != expense.id]
    if not others:
        return None
    return _finding(
        expense,
        RuleType.DUPLICATE,
        Severity.HIGH,
        "Potential duplicate expense",
        f"Found {len(others)} other expense(s) with the same amount ({_money(expense.amount)}), "
        f"description, and date",
        related=others,
    )


def rapid_neighbors(expense: ExpenseRecord, ctx: ScanContext) -> List[str]:
    """Ids of the submitter's other expenses within the window, either side."""
    if not expense.submitter_id:
        return []
    timeline = ctx.timelines.get(expense.submitter_id)
    if timeline is None:
        return []
    window = timedelta(minutes=ctx.config.rapid_succession_minutes)
    lo = bisect_left(timeline.times, expense.created_at - window)
    hi = bisect_right(timeline.times, expense.created_at + window)
    return [e.id for e in timeline.expenses[lo:hi] if e.id != expense.id]


def rapid_succession_rule(expense: ExpenseRecord, ctx: ScanContext) -> Optional[Finding]:
    neighbors = rapid_neighbors(expense, ctx)
    if not neighbors or len(neighbors) < ctx.config.rapid_succession_count - 1:
        return None
    return _finding(
        expense,
        RuleType.RAPID_SUCCESSION,
        Severity.MEDIUM,
        "Rapid expense submission",
        f"{len(neighbors) + 1} expenses submitted within {ctx.config.rapid_succession_minutes} minutes",
        related=neighbors,
    )


def threshold_gaming_rule(expense: ExpenseRecord, ctx: ScanContext) -> Optional[Finding]:
    amount = Decimal(expense.amount)
    proximity = ctx.config.threshold_proximity
    for limit in sorted(ctx.config.threshold_limits):
        floor = limit - limit * proximity
        if floor <= amount < limit:
            return _finding(
                expense,
                RuleType.THRESHOLD_GAMING,
                Severity.MEDIUM,
                "Amount near approval threshold",
                f"Amount of {_money(amount)} is just {_money(limit - amount)} below the "
                f"{_money(limit)} threshold",
            )
    return None


def weekend_rule(expense: ExpenseRecord, ctx: ScanContext) -> Optional[Finding]:
    if not ctx.config.weekend_detection_enabled:
        return None
    day_name = WEEKEND_DAYS.get(expense.expense_date.weekday())
    if day_name is None:
        return None
    return _finding(
        expense,
        RuleType.WEEKEND_EXPENSE,
        Severity.LOW,
        "Weekend expense",
        f"Expense dated on a {day_name}",
    )


def round_amount_rule(expense: ExpenseRecord, ctx: ScanContext) -> Optional[Finding]:
    amount = Decimal(expense.amount)
    if amount < ctx.config.round_amount_threshold:
        return None
    for divisor in sorted(ctx.config.round_amount_divisors):
        if amount >= divisor and amount % divisor == 0:
            return _finding(
                expense,
                RuleType.ROUND_AMOUNT,
                Severity.LOW,
                "Round amount",
                f"Amount of {_money(amount)} is a multiple of {_money(divisor)}, "
                f"which may warrant verification",
            )
    return None


Rule = Callable[[ExpenseRecord, ScanContext], Optional[Finding]]

RULES: Tuple[Rule, ...] = (
    high_amount_rule,
    duplicate_rule,
    rapid_succession_rule,
    threshold_gaming_rule,
    weekend_rule,
    round_amount_rule,
)


def detect_findings(
    expenses: Iterable[ExpenseRecord],
    config: DetectionConfig,
    now: datetime,
) -> List[Finding]:
    """
    Run every rule over the snapshot and return one Finding per
    (expense, rule type), highest severity first.

    `now` is the scan's reference time. Rules never read the wall clock, so
    identical inputs always produce identical findings.
    """
    if not config.is_active:
        return []

    snapshot = list(expenses)
    if not snapshot:
        return []

    ctx = _build_context(snapshot, config, now)
    raw: List[Finding] = []
    for expense in snapshot:
        for rule in RULES:
            found = rule(expense, ctx)
            if found is not None:
                raw.append(found)
    return dedupe_findings(raw)
