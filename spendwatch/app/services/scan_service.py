from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from spendwatch.app.detection import FindingSummary, detect_findings, summarize_findings
from spendwatch.app.detection.schema import DetectionConfig, ExpenseRecord, Finding
from spendwatch.app.errors import ScanTimeout, SnapshotUnavailable
from spendwatch.app.notifications import NotificationChannel
from spendwatch.app.services import alert_service, audit_service, review_service, settings_service
from spendwatch.app.services.snapshot_service import (
    ExpenseSnapshotProvider,
    SqlExpenseSnapshotProvider,
    window_start,
)
from spendwatch.app.services.tenant_locks import tenant_locks

logger = logging.getLogger(__name__)

SCAN_FETCH_ATTEMPTS = 3
SCAN_FETCH_BACKOFF_SECONDS = 0.2
DIGEST_WINDOW_DAYS = 7


@dataclass
class ScanResult:
    company_id: str
    scanned_at: datetime
    window_start: date
    scanned_count: int
    config_version: int
    findings: List[Finding]
    summary: FindingSummary
    reconcile: review_service.ReconcileSummary
    alerts: Optional[alert_service.DispatchResult] = None
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "company_id": self.company_id,
            "scanned_at": self.scanned_at.isoformat(),
            "window_start": self.window_start.isoformat(),
            "scanned_count": self.scanned_count,
            "config_version": self.config_version,
            "summary": self.summary.as_dict(),
            "reconcile": self.reconcile.as_dict(),
            "alerts": self.alerts.as_dict() if self.alerts else None,
            "warnings": list(self.warnings),
            "findings": [_finding_dict(f) for f in self.findings],
        }


def _finding_dict(finding: Finding) -> Dict[str, Any]:
    return {
        "id": finding.id,
        "expense_id": finding.expense_id,
        "rule_type": finding.rule_type.value,
        "severity": finding.severity.label,
        "description": finding.description,
        "details": finding.details,
        "amount": str(finding.amount),
        "expense_date": finding.expense_date.isoformat(),
        "expense_description": finding.expense_description,
        "category_name": finding.category_name,
        "submitter_name": finding.submitter_name,
        "department": finding.department,
        "related_expense_ids": list(finding.related_expense_ids),
    }


class _Deadline:
    def __init__(self, company_id: str, timeout: Optional[float]):
        self.company_id = company_id
        self.timeout = timeout
        self.expires_at = time.monotonic() + timeout if timeout is not None else None

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(self.expires_at - time.monotonic(), 0.0)

    def check(self, stage: str) -> None:
        if self.expires_at is not None and time.monotonic() >= self.expires_at:
            raise ScanTimeout(f"scan for company '{self.company_id}' exceeded {self.timeout}s during {stage}")


def fetch_snapshot(
    provider: ExpenseSnapshotProvider,
    company_id: str,
    since: date,
    *,
    deadline: Optional[_Deadline] = None,
    attempts: int = SCAN_FETCH_ATTEMPTS,
) -> List[ExpenseRecord]:
    last_error: Optional[SnapshotUnavailable] = None
    for attempt in range(1, attempts + 1):
        if deadline is not None:
            deadline.check("snapshot fetch")
        try:
            return list(provider.fetch(company_id, since))
        except SnapshotUnavailable as exc:
            last_error = exc
            logger.warning(
                "snapshot fetch for company %s failed (attempt %s/%s): %s", company_id, attempt, attempts, exc
            )
            if attempt < attempts:
                time.sleep(SCAN_FETCH_BACKOFF_SECONDS * attempt)
    raise SnapshotUnavailable(
        f"expense snapshot for company '{company_id}' unavailable after {attempts} attempts"
    ) from last_error


def _config_version(db: Session, company_id: str) -> int:
    return int(settings_service.get_settings(db, company_id)["version"])


def scan_and_reconcile(
    db: Session,
    company_id: str,
    *,
    provider: Optional[ExpenseSnapshotProvider] = None,
    now: Optional[datetime] = None,
    timeout: Optional[float] = None,
    window_days: Optional[int] = None,
    alert: bool = False,
    channel: Optional[NotificationChannel] = None,
    alert_timeout: Optional[float] = None,
    alert_kind: str = "alert",
) -> ScanResult:
    """
    Snapshot -> detect -> dedupe -> reconcile, all under the company lock.

    Reconciliation commits once at the end. A timeout rolls back any review
    rows created so far and raises ScanTimeout; a failing snapshot raises
    SnapshotUnavailable after retries. Nothing partial is ever returned.
    Alerts (when requested) are sent after the commit, outside the lock.
    """
    audit_service.require_company(db, company_id)
    deadline = _Deadline(company_id, timeout)
    now = now or datetime.now(timezone.utc)
    provider = provider or SqlExpenseSnapshotProvider(db)

    with tenant_locks.hold(company_id, timeout=deadline.remaining(), error=ScanTimeout):
        try:
            config: DetectionConfig = settings_service.get_config(db, company_id)
            version = _config_version(db, company_id)
            since = window_start(now.date(), window_days or config.analysis_window_days)

            expenses = fetch_snapshot(provider, company_id, since, deadline=deadline)
            deadline.check("detection")

            findings = detect_findings(expenses, config, now)
            summary = summarize_findings(findings)
            deadline.check("reconciliation")

            reconcile = review_service.reconcile_findings(db, company_id, findings)
            deadline.check("commit")
            db.commit()
        except ScanTimeout:
            db.rollback()
            logger.warning("scan for company %s timed out; reconciliation rolled back", company_id)
            raise
        except Exception:
            db.rollback()
            raise

    logger.info(
        "scanned %s expenses for company %s: %s findings (%s high), %s new reviews, %s conflicts",
        len(expenses),
        company_id,
        summary.total,
        summary.high,
        reconcile.created,
        reconcile.conflicts,
    )

    result = ScanResult(
        company_id=company_id,
        scanned_at=now,
        window_start=since,
        scanned_count=len(expenses),
        config_version=version,
        findings=findings,
        summary=summary,
        reconcile=reconcile,
    )
    if reconcile.conflicts:
        result.warnings.append(f"{reconcile.conflicts} finding(s) skipped after create-if-absent conflicts")

    if alert:
        result.alerts = alert_service.dispatch_alerts(
            db,
            company_id,
            channel=channel,
            timeout=alert_timeout,
            kind=alert_kind,
            findings=findings,
            review_ids=reconcile.created_review_ids if alert_kind == "digest" else None,
        )
    return result


def run_scheduled_scan(
    db: Session,
    company_id: str,
    *,
    provider: Optional[ExpenseSnapshotProvider] = None,
    now: Optional[datetime] = None,
    channel: Optional[NotificationChannel] = None,
    timeout: Optional[float] = None,
    window_days: int = DIGEST_WINDOW_DAYS,
) -> ScanResult:
    """Short-window scan that sends a digest only when it created new high reviews."""
    result = scan_and_reconcile(
        db,
        company_id,
        provider=provider,
        now=now,
        timeout=timeout,
        window_days=window_days,
    )
    if result.reconcile.created_high:
        result.alerts = alert_service.dispatch_alerts(
            db,
            company_id,
            channel=channel,
            kind="digest",
            findings=result.findings,
            review_ids=result.reconcile.created_review_ids,
        )
    else:
        logger.info("scheduled scan for company %s found no new high-severity anomalies", company_id)
    return result
