from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional, Tuple


class Severity(IntEnum):
    """Ordered so that "keep the highest" is a plain max()."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: str) -> "Severity":
        try:
            return cls[(value or "").strip().upper()]
        except KeyError as exc:
            raise ValueError(f"unknown severity: {value!r}") from exc


class RuleType(str, Enum):
    HIGH_AMOUNT = "high_amount"
    DUPLICATE = "duplicate"
    RAPID_SUCCESSION = "rapid_succession"
    THRESHOLD_GAMING = "threshold_gaming"
    WEEKEND_EXPENSE = "weekend_expense"
    ROUND_AMOUNT = "round_amount"
    # reserved; no detector emits it yet
    UNUSUAL_CATEGORY = "unusual_category"


RULE_LABELS = {
    RuleType.HIGH_AMOUNT: "Unusually High Amount",
    RuleType.DUPLICATE: "Potential Duplicate",
    RuleType.RAPID_SUCCESSION: "Rapid Submission",
    RuleType.THRESHOLD_GAMING: "Near Approval Threshold",
    RuleType.WEEKEND_EXPENSE: "Weekend Expense",
    RuleType.ROUND_AMOUNT: "Round Amount",
    RuleType.UNUSUAL_CATEGORY: "Unusual Category",
}


# -------------------------
# Input
# -------------------------

@dataclass(frozen=True)
class ExpenseRecord:
    id: str
    description: str
    amount: Decimal
    expense_date: date
    created_at: datetime              # submission time, not the expense date
    status: str = "pending"
    department: Optional[str] = None
    submitter_id: Optional[str] = None
    submitter_name: Optional[str] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None


DEFAULT_THRESHOLD_LIMITS: Tuple[Decimal, ...] = tuple(
    Decimal(v) for v in ("100", "500", "1000", "2500", "5000")
)
DEFAULT_ROUND_DIVISORS: Tuple[Decimal, ...] = tuple(Decimal(v) for v in ("100", "500", "1000"))


@dataclass(frozen=True)
class DetectionConfig:
    """
    Per-company detection thresholds, passed explicitly into every scan.

    approval_threshold_percent is "percent of the limit": 95 means an amount
    between 95% and 100% (exclusive) of a limit is flagged.
    """

    high_amount_threshold_percent: int = 200
    min_high_amount: Decimal = Decimal("500")
    duplicate_window_hours: int = 24
    rapid_succession_minutes: int = 30
    rapid_succession_count: int = 3
    approval_threshold_percent: int = 95
    threshold_limits: Tuple[Decimal, ...] = DEFAULT_THRESHOLD_LIMITS
    round_amount_threshold: Decimal = Decimal("100")
    round_amount_divisors: Tuple[Decimal, ...] = DEFAULT_ROUND_DIVISORS
    weekend_detection_enabled: bool = True
    is_active: bool = True
    analysis_window_days: int = 90

    @property
    def high_amount_multiplier(self) -> Decimal:
        return Decimal(self.high_amount_threshold_percent) / Decimal(100)

    @property
    def threshold_proximity(self) -> Decimal:
        return Decimal(100 - self.approval_threshold_percent) / Decimal(100)


# -------------------------
# Output
# -------------------------

@dataclass(frozen=True)
class Finding:
    id: str
    expense_id: str
    rule_type: RuleType
    severity: Severity
    description: str
    details: str
    amount: Decimal
    expense_date: date
    expense_description: str
    category_name: Optional[str] = None
    submitter_name: Optional[str] = None
    department: Optional[str] = None
    related_expense_ids: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def key(self) -> Tuple[str, RuleType]:
        return (self.expense_id, self.rule_type)


def finding_id(expense_id: str, rule_type: RuleType) -> str:
    return f"{rule_type.value}:{expense_id}"
