from __future__ import annotations

import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from spendwatch.app.detection.schema import RULE_LABELS, Finding, RuleType
from spendwatch.app.errors import AlertDeliveryFailed, AlertTimeout
from spendwatch.app.models import AnomalyReview, NotificationLog, Profile, UserRole
from spendwatch.app.notifications import DeliveryOutcome, NotificationChannel, Recipient, get_channel
from spendwatch.app.services import audit_service, review_service
from spendwatch.app.services.snapshot_service import expense_summaries

logger = logging.getLogger(__name__)

ALERT_ROLES = ("super_admin", "admin", "finance_manager")
DEFAULT_MAX_WORKERS = 4
TIMEOUT_ERROR = "delivery did not finish before the alert deadline"


def max_workers_from_env() -> int:
    raw = os.getenv("ALERT_MAX_WORKERS")
    if not raw:
        return DEFAULT_MAX_WORKERS
    try:
        return max(int(raw), 1)
    except ValueError:
        logger.warning("ignoring non-numeric ALERT_MAX_WORKERS=%r", raw)
        return DEFAULT_MAX_WORKERS


@dataclass(frozen=True)
class DispatchResult:
    attempted: int
    succeeded: int
    failed: int
    anomaly_count: int = 0
    logged: int = 0
    outcomes: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "logged": self.logged,
            "anomaly_count": self.anomaly_count,
            "outcomes": list(self.outcomes),
        }


EMPTY_DISPATCH = DispatchResult(attempted=0, succeeded=0, failed=0)


# -------------------------
# Recipients + payload
# -------------------------

def resolve_recipients(db: Session, company_id: str) -> List[Recipient]:
    rows = db.execute(
        select(Profile.id, Profile.email, Profile.full_name)
        .join(UserRole, UserRole.user_id == Profile.id)
        .where(
            Profile.company_id == company_id,
            UserRole.role.in_(ALERT_ROLES),
            Profile.email.is_not(None),
            func.length(func.trim(Profile.email)) > 0,
        )
        .distinct()
        .order_by(Profile.email.asc(), Profile.id.asc())
    ).all()
    return [Recipient(user_id=user_id, email=email.strip(), name=full_name) for user_id, email, full_name in rows]


def _money(value: Decimal) -> str:
    return f"${value:,.2f}"


def _rule_label(anomaly_type: str) -> str:
    try:
        return RULE_LABELS[RuleType(anomaly_type)]
    except ValueError:
        return anomaly_type.replace("_", " ").title()


def build_payload(
    reviews: Sequence[AnomalyReview],
    expenses: Dict[str, dict],
    *,
    kind: str = "alert",
    details: Optional[Dict[Tuple[str, str], str]] = None,
) -> Dict[str, Any]:
    details = details or {}
    items = []
    total = Decimal("0")
    for review in reviews:
        expense = expenses.get(review.expense_id) or {}
        amount = Decimal(expense.get("amount") or "0")
        total += amount
        items.append(
            {
                "review_id": review.id,
                "expense_id": review.expense_id,
                "anomaly_type": review.anomaly_type,
                "rule_label": _rule_label(review.anomaly_type),
                "severity": review.severity,
                "description": expense.get("description"),
                "amount": str(amount),
                "expense_date": expense.get("expense_date"),
                "submitter_name": expense.get("submitter_name"),
                "category_name": expense.get("category_name"),
                "department": expense.get("department"),
                "details": details.get((review.expense_id, review.anomaly_type)),
            }
        )

    count = len(items)
    noun = "Anomaly" if count == 1 else "Anomalies"
    prefix = "Daily Digest: " if kind == "digest" else ""
    return {
        "kind": kind,
        "title": f"{prefix}{count} High-Severity Expense {noun} Detected",
        "message": f"{count} high-severity {noun.lower()} totaling {_money(total)} need review.",
        "items": items,
        "anomaly_count": count,
        "total_amount": str(total),
        "expense_ids": sorted({item["expense_id"] for item in items}),
    }


# -------------------------
# Fan-out
# -------------------------

def _deliver(channel: NotificationChannel, recipient: Recipient, payload: Dict[str, Any]) -> DeliveryOutcome:
    try:
        return channel.send(recipient, payload)
    except AlertDeliveryFailed as exc:
        logger.warning("alert delivery to %s failed: %s", recipient.email, exc)
        return DeliveryOutcome(recipient=recipient, delivered=False, error=str(exc))
    except Exception as exc:
        logger.exception("unexpected error delivering alert to %s", recipient.email)
        return DeliveryOutcome(recipient=recipient, delivered=False, error=f"{type(exc).__name__}: {exc}")


def _log_attempt(
    db: Session,
    company_id: str,
    channel: NotificationChannel,
    payload: Dict[str, Any],
    outcome: DeliveryOutcome,
) -> None:
    db.add(
        NotificationLog(
            company_id=company_id,
            user_id=outcome.recipient.user_id,
            channel=getattr(channel, "name", type(channel).__name__),
            category=f"anomaly_{payload['kind']}",
            title=payload["title"],
            message=payload["message"],
            recipient_email=outcome.recipient.email,
            recipient_name=outcome.recipient.name,
            status=outcome.status,
            metadata_json={
                "anomaly_count": payload["anomaly_count"],
                "total_amount": payload["total_amount"],
                "expense_ids": payload["expense_ids"],
            },
            error_message=outcome.error,
        )
    )


def _outcome_dict(outcome: DeliveryOutcome) -> Dict[str, Any]:
    return {
        "user_id": outcome.recipient.user_id,
        "email": outcome.recipient.email,
        "delivered": outcome.delivered,
        "status": outcome.status,
        "error": outcome.error,
    }


def _log_late(outcome: DeliveryOutcome) -> None:
    if outcome.delivered:
        logger.warning(
            "alert to %s was delivered after the deadline; its log row still reads failed", outcome.recipient.email
        )
    else:
        logger.warning("alert to %s failed after the deadline: %s", outcome.recipient.email, outcome.error)


def _report_late(future: Future, on_late: Callable[[DeliveryOutcome], None]) -> None:
    if future.cancelled():
        return
    on_late(future.result())


def fan_out(
    channel: NotificationChannel,
    recipients: Sequence[Recipient],
    payload: Dict[str, Any],
    *,
    timeout: Optional[float] = None,
    max_workers: Optional[int] = None,
    on_late: Callable[[DeliveryOutcome], None] = _log_late,
) -> Tuple[List[DeliveryOutcome], bool]:
    """
    Send to every recipient concurrently. Returns (outcomes in recipient
    order, timed_out). Recipients still in flight at the deadline get a
    failed outcome. Sends that had not started are cancelled; sends already
    running cannot be interrupted, so they finish in the background and
    their real outcome goes to on_late instead of the returned list.
    """
    workers = min(len(recipients), max_workers or max_workers_from_env())
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="anomaly-alert")
    try:
        futures: List[Future] = [
            executor.submit(_deliver, channel, recipient, payload) for recipient in recipients
        ]
        _, not_done = wait(futures, timeout=timeout)
        outcomes = []
        for recipient, future in zip(recipients, futures):
            if future in not_done:
                if not future.cancel():
                    future.add_done_callback(lambda done: _report_late(done, on_late))
                outcomes.append(DeliveryOutcome(recipient=recipient, delivered=False, error=TIMEOUT_ERROR))
            else:
                outcomes.append(future.result())
        return outcomes, bool(not_done)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def dispatch_alerts(
    db: Session,
    company_id: str,
    *,
    channel: Optional[NotificationChannel] = None,
    timeout: Optional[float] = None,
    max_workers: Optional[int] = None,
    kind: str = "alert",
    findings: Optional[Iterable[Finding]] = None,
    review_ids: Optional[Iterable[str]] = None,
) -> DispatchResult:
    """
    Notify alert recipients about pending high-severity reviews.

    review_ids narrows the set (used by digests to report only new rows).
    Every attempt is written to notification_logs. If the deadline passes,
    the logs for finished and unfinished attempts are still committed and
    AlertTimeout is raised.
    """
    audit_service.require_company(db, company_id)

    reviews = review_service.pending_high_reviews(db, company_id)
    if review_ids is not None:
        wanted = set(review_ids)
        reviews = [review for review in reviews if review.id in wanted]
    if not reviews:
        logger.info("no pending high-severity anomalies for company %s, nothing to send", company_id)
        return EMPTY_DISPATCH

    recipients = resolve_recipients(db, company_id)
    if not recipients:
        logger.warning("company %s has %s high anomalies but no alert recipients", company_id, len(reviews))
        return DispatchResult(attempted=0, succeeded=0, failed=0, anomaly_count=len(reviews))

    details = {(f.expense_id, f.rule_type.value): f.details for f in (findings or ())}
    payload = build_payload(
        reviews,
        expense_summaries(db, sorted({r.expense_id for r in reviews})),
        kind=kind,
        details=details,
    )
    channel = channel or get_channel()

    outcomes, timed_out = fan_out(channel, recipients, payload, timeout=timeout, max_workers=max_workers)
    for outcome in outcomes:
        _log_attempt(db, company_id, channel, payload, outcome)
    db.commit()

    succeeded = sum(1 for outcome in outcomes if outcome.delivered)
    logged = sum(1 for outcome in outcomes if outcome.logged)
    result = DispatchResult(
        attempted=len(outcomes),
        succeeded=succeeded,
        failed=len(outcomes) - succeeded - logged,
        logged=logged,
        anomaly_count=payload["anomaly_count"],
        outcomes=[_outcome_dict(outcome) for outcome in outcomes],
    )
    if timed_out:
        raise AlertTimeout(
            f"alert fan-out for company '{company_id}' exceeded {timeout}s "
            f"({result.succeeded}/{result.attempted} delivered)"
        )
    logger.info(
        "anomaly %s for company %s: %s/%s delivered", kind, company_id, result.succeeded, result.attempted
    )
    return result
