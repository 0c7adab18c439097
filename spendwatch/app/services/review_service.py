from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from spendwatch.app.detection.schema import Finding, Severity
from spendwatch.app.errors import AuditWriteFailed, LedgerConflict, TransitionRejected
from spendwatch.app.models import AnomalyReview
from spendwatch.app.services import audit_service
from spendwatch.app.services.snapshot_service import expense_summaries
from spendwatch.app.services.tenant_locks import tenant_locks

logger = logging.getLogger(__name__)


class ReviewStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"
    ESCALATED = "escalated"


TRANSITIONS: Dict[ReviewStatus, FrozenSet[ReviewStatus]] = {
    ReviewStatus.PENDING: frozenset(
        {ReviewStatus.REVIEWED, ReviewStatus.DISMISSED, ReviewStatus.ESCALATED}
    ),
    # reopening is an administrative action outside this service
    ReviewStatus.REVIEWED: frozenset(),
    ReviewStatus.DISMISSED: frozenset(),
    ReviewStatus.ESCALATED: frozenset(),
}
BULK_TARGETS: FrozenSet[ReviewStatus] = frozenset({ReviewStatus.REVIEWED, ReviewStatus.DISMISSED})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: ReviewStatus, target: ReviewStatus) -> bool:
    return target in TRANSITIONS[current]


def _parse_status(value: str) -> ReviewStatus:
    try:
        return ReviewStatus((value or "").strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid status") from exc


def _require_actor(actor: Optional[str]) -> str:
    if not actor or not actor.strip():
        raise HTTPException(status_code=400, detail="actor is required")
    return actor.strip()


def _serialize_review(review: AnomalyReview) -> dict:
    return {
        "id": review.id,
        "company_id": review.company_id,
        "expense_id": review.expense_id,
        "anomaly_type": review.anomaly_type,
        "severity": review.severity,
        "status": review.status,
        "reviewed_by": review.reviewed_by,
        "reviewed_at": review.reviewed_at.isoformat() if review.reviewed_at else None,
        "resolution_notes": review.resolution_notes,
        "created_at": review.created_at.isoformat() if review.created_at else None,
        "updated_at": review.updated_at.isoformat() if review.updated_at else None,
    }


@dataclass(frozen=True)
class ReconcileSummary:
    created: int
    existing: int
    conflicts: int
    created_review_ids: Tuple[str, ...] = ()
    created_high: int = 0

    def as_dict(self) -> dict:
        return {
            "created": self.created,
            "existing": self.existing,
            "conflicts": self.conflicts,
            "created_high": self.created_high,
            "created_review_ids": list(self.created_review_ids),
        }


@dataclass(frozen=True)
class TransitionResult:
    review: dict
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BulkTransitionResult:
    status: str
    requested: int
    updated_ids: List[str]
    skipped_ids: List[str]
    warnings: List[str] = field(default_factory=list)

    @property
    def updated(self) -> int:
        return len(self.updated_ids)


# -------------------------
# Reads
# -------------------------

def _find_review(db: Session, company_id: str, expense_id: str, anomaly_type: str) -> Optional[AnomalyReview]:
    return (
        db.execute(
            select(AnomalyReview).where(
                AnomalyReview.company_id == company_id,
                AnomalyReview.expense_id == expense_id,
                AnomalyReview.anomaly_type == anomaly_type,
            )
        )
        .scalars()
        .first()
    )


def _require_review(db: Session, company_id: str, review_id: str) -> AnomalyReview:
    review = db.get(AnomalyReview, review_id)
    if not review or review.company_id != company_id:
        raise HTTPException(status_code=404, detail="anomaly review not found")
    return review


def review_history(db: Session, company_id: str, review_id: str) -> List[dict]:
    """Audit trail of one review, oldest transition first."""
    _require_review(db, company_id, review_id)
    return audit_service.list_audit_entries(
        db,
        company_id,
        table_name=audit_service.REVIEW_TABLE,
        record_id=review_id,
        limit=500,
        oldest_first=True,
    )


def list_reviews(db: Session, company_id: str, status: Optional[str] = None) -> List[dict]:
    audit_service.require_company(db, company_id)
    query = select(AnomalyReview).where(AnomalyReview.company_id == company_id)
    if status:
        query = query.where(AnomalyReview.status == _parse_status(status).value)
    rows = (
        db.execute(query.order_by(AnomalyReview.created_at.desc(), AnomalyReview.id.asc()))
        .scalars()
        .all()
    )
    summaries = expense_summaries(db, sorted({row.expense_id for row in rows}))
    items = []
    for row in rows:
        item = _serialize_review(row)
        item["expense"] = summaries.get(row.expense_id)
        items.append(item)
    return items


def pending_high_reviews(db: Session, company_id: str) -> List[AnomalyReview]:
    return list(
        db.execute(
            select(AnomalyReview)
            .where(
                AnomalyReview.company_id == company_id,
                AnomalyReview.status == ReviewStatus.PENDING.value,
                AnomalyReview.severity == Severity.HIGH.label,
            )
            .order_by(AnomalyReview.created_at.asc(), AnomalyReview.id.asc())
        )
        .scalars()
        .all()
    )


def review_stats(db: Session, company_id: str) -> Dict[str, int]:
    audit_service.require_company(db, company_id)
    stats = {status.value: 0 for status in ReviewStatus}
    rows = db.execute(
        select(AnomalyReview.status, func.count())
        .where(AnomalyReview.company_id == company_id)
        .group_by(AnomalyReview.status)
    ).all()
    for status, count in rows:
        stats[status] = int(count or 0)
    stats["total"] = sum(stats[status.value] for status in ReviewStatus)
    stats["high_severity_pending"] = int(
        db.execute(
            select(func.count()).where(
                AnomalyReview.company_id == company_id,
                AnomalyReview.status == ReviewStatus.PENDING.value,
                AnomalyReview.severity == Severity.HIGH.label,
            )
        ).scalar_one()
        or 0
    )
    return stats


# -------------------------
# Create-if-absent + reconciliation
# -------------------------

def create_if_absent(
    db: Session,
    company_id: str,
    *,
    expense_id: str,
    anomaly_type: str,
    severity: str,
) -> Tuple[AnomalyReview, bool]:
    """
    Returns (review, created). A lost insert race is retried once with a
    fresh read; a second loss raises LedgerConflict.
    """
    for attempt in range(2):
        existing = _find_review(db, company_id, expense_id, anomaly_type)
        if existing is not None:
            return existing, False
        now = _now()
        review = AnomalyReview(
            company_id=company_id,
            expense_id=expense_id,
            anomaly_type=anomaly_type,
            severity=severity,
            status=ReviewStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        try:
            with db.begin_nested():
                db.add(review)
        except IntegrityError:
            logger.info(
                "create-if-absent race on %s/%s (attempt %s)", expense_id, anomaly_type, attempt + 1
            )
            continue
        return review, True
    raise LedgerConflict(expense_id, anomaly_type)


def reconcile_findings(db: Session, company_id: str, findings: Iterable[Finding]) -> ReconcileSummary:
    """
    Create a pending review for every finding that has none. Existing reviews,
    terminal or not, are left exactly as they are. Does not commit; callers
    hold the company lock and commit once.
    """
    created_ids: List[str] = []
    created_high = 0
    existing = 0
    conflicts = 0
    for finding in findings:
        try:
            review, created = create_if_absent(
                db,
                company_id,
                expense_id=finding.expense_id,
                anomaly_type=finding.rule_type.value,
                severity=finding.severity.label,
            )
        except LedgerConflict as exc:
            conflicts += 1
            logger.warning("skipping finding %s: %s", finding.id, exc)
            continue
        if created:
            created_ids.append(review.id)
            if finding.severity is Severity.HIGH:
                created_high += 1
        else:
            existing += 1
    return ReconcileSummary(
        created=len(created_ids),
        existing=existing,
        conflicts=conflicts,
        created_review_ids=tuple(created_ids),
        created_high=created_high,
    )


# -------------------------
# Transitions
# -------------------------

def _audit_transition(
    db: Session,
    review: AnomalyReview,
    *,
    event_type: str,
    actor: str,
    notes: Optional[str],
    before: dict,
) -> List[str]:
    try:
        with db.begin_nested():
            audit_service.log_audit_event(
                db,
                company_id=review.company_id,
                event_type=event_type,
                actor=actor,
                record_id=review.id,
                reason=notes,
                before={"status": before["status"]},
                after={"status": review.status, "resolution_notes": notes},
            )
    except SQLAlchemyError as exc:
        cause = getattr(exc, "orig", None) or exc
        warning = AuditWriteFailed(review.id, type(cause).__name__)
        logger.warning("audit write for review %s failed: %s", review.id, exc)
        return [str(warning)]
    return []


def _apply_transition(
    review: AnomalyReview,
    target: ReviewStatus,
    *,
    actor: str,
    notes: Optional[str],
    now: datetime,
) -> None:
    review.status = target.value
    review.reviewed_by = actor
    review.reviewed_at = now
    review.resolution_notes = notes
    review.updated_at = now


def transition_review(
    db: Session,
    company_id: str,
    review_id: str,
    *,
    status: str,
    actor: Optional[str],
    notes: Optional[str] = None,
) -> TransitionResult:
    target = _parse_status(status)
    reviewer = _require_actor(actor)
    audit_service.require_company(db, company_id)

    with tenant_locks.hold(company_id):
        review = _require_review(db, company_id, review_id)
        current = ReviewStatus(review.status)
        if not can_transition(current, target):
            raise TransitionRejected(review.id, current.value, target.value)

        before = _serialize_review(review)
        _apply_transition(review, target, actor=reviewer, notes=notes, now=_now())
        warnings = _audit_transition(
            db,
            review,
            event_type=f"anomaly_{target.value}",
            actor=reviewer,
            notes=notes,
            before=before,
        )
        db.commit()
        return TransitionResult(review=_serialize_review(review), warnings=warnings)


def bulk_transition(
    db: Session,
    company_id: str,
    review_ids: Iterable[str],
    *,
    status: str,
    actor: Optional[str],
    notes: Optional[str] = None,
) -> BulkTransitionResult:
    """
    Apply reviewed/dismissed to the pending subset of review_ids. Anything not
    pending (or not found) is skipped, not an error. Each item commits its
    status together with its own audit row.
    """
    target = _parse_status(status)
    if target not in BULK_TARGETS:
        raise HTTPException(status_code=400, detail="bulk status must be reviewed|dismissed")
    reviewer = _require_actor(actor)
    audit_service.require_company(db, company_id)

    requested = list(dict.fromkeys(review_ids))
    updated: List[str] = []
    warnings: List[str] = []

    with tenant_locks.hold(company_id):
        pending = (
            db.execute(
                select(AnomalyReview)
                .where(
                    AnomalyReview.company_id == company_id,
                    AnomalyReview.id.in_(requested),
                    AnomalyReview.status == ReviewStatus.PENDING.value,
                )
                .order_by(AnomalyReview.id.asc())
            )
            .scalars()
            .all()
        ) if requested else []

        now = _now()
        for review in pending:
            before = _serialize_review(review)
            _apply_transition(review, target, actor=reviewer, notes=notes, now=now)
            warnings.extend(
                _audit_transition(
                    db,
                    review,
                    event_type=f"bulk_anomaly_{target.value}",
                    actor=reviewer,
                    notes=notes,
                    before=before,
                )
            )
            db.commit()
            updated.append(review.id)

    updated_set = set(updated)
    skipped = [review_id for review_id in requested if review_id not in updated_set]
    logger.info(
        "bulk %s for company %s: %s updated, %s skipped", target.value, company_id, len(updated), len(skipped)
    )
    return BulkTransitionResult(
        status=target.value,
        requested=len(requested),
        updated_ids=updated,
        skipped_ids=skipped,
        warnings=warnings,
    )
