from __future__ import annotations

from typing import Dict, List, Optional


class AnomalyServiceError(Exception):
    """Base class for failures surfaced by the anomaly core."""


class ConfigInvalid(AnomalyServiceError, ValueError):
    """Raised when detection settings are malformed or out of range."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, object]]] = None):
        super().__init__(message)
        self.errors = errors or []


class SnapshotUnavailable(AnomalyServiceError):
    """Raised when the expense snapshot cannot be read; the scan is aborted."""


class LedgerConflict(AnomalyServiceError):
    """Raised when create-if-absent keeps losing a race for the same pair."""

    def __init__(self, expense_id: str, anomaly_type: str):
        super().__init__(
            f"review for expense '{expense_id}' / '{anomaly_type}' could not be created after retry"
        )
        self.expense_id = expense_id
        self.anomaly_type = anomaly_type


class TransitionRejected(AnomalyServiceError):
    """Raised when a review action targets a record that is no longer pending."""

    def __init__(self, review_id: str, current_status: str, target_status: str):
        super().__init__(
            f"review '{review_id}' cannot move from '{current_status}' to '{target_status}'"
        )
        self.review_id = review_id
        self.current_status = current_status
        self.target_status = target_status


class AuditWriteFailed(AnomalyServiceError):
    """Attached as a warning when a transition committed without its audit row."""

    def __init__(self, review_id: str, reason: str):
        super().__init__(f"audit entry for review '{review_id}' was not written: {reason}")
        self.review_id = review_id
        self.reason = reason


class AlertDeliveryFailed(AnomalyServiceError):
    """Raised by notification channels for a single recipient."""


class OperationTimeout(AnomalyServiceError, TimeoutError):
    """Raised instead of returning a partial result when a deadline passes."""


class ScanTimeout(OperationTimeout):
    pass


class AlertTimeout(OperationTimeout):
    pass
