from .engine import detect_findings
from .schema import DetectionConfig, ExpenseRecord, Finding, RuleType, Severity
from .scoring import FindingSummary, dedupe_findings, summarize_findings

__all__ = [
    "DetectionConfig",
    "ExpenseRecord",
    "Finding",
    "FindingSummary",
    "RuleType",
    "Severity",
    "dedupe_findings",
    "detect_findings",
    "summarize_findings",
]
