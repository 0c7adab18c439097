import sqlite3
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import Text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from spendwatch.app.api.routes.anomalies import MAX_NOTES_LENGTH
from spendwatch.app.detection import RuleType, Severity
from spendwatch.app.detection.schema import Finding, finding_id
from spendwatch.app.errors import LedgerConflict, TransitionRejected
from spendwatch.app.models import AnomalyReview, AuditLog, Company, Expense, Profile
from spendwatch.app.services import audit_service, review_service


def _seed(db, expense_count: int = 3):
    company = Company(name="Ledger Co")
    db.add(company)
    db.flush()
    submitter = Profile(company_id=company.id, full_name="Sam Submitter", email="sam@example.com")
    db.add(submitter)
    db.flush()
    expenses = []
    for idx in range(expense_count):
        expense = Expense(
            company_id=company.id,
            description=f"Expense {idx}",
            amount=Decimal("120.00") + idx,
            expense_date=date(2024, 3, 5),
            created_by=submitter.id,
        )
        db.add(expense)
        expenses.append(expense)
    db.commit()
    return company, expenses


def _finding(expense: Expense, rule_type: RuleType, severity: Severity) -> Finding:
    return Finding(
        id=finding_id(expense.id, rule_type),
        expense_id=expense.id,
        rule_type=rule_type,
        severity=severity,
        description=rule_type.value,
        details="",
        amount=Decimal(expense.amount),
        expense_date=expense.expense_date,
        expense_description=expense.description,
    )


def _reviews_for(db, company_id):
    return db.query(AnomalyReview).filter(AnomalyReview.company_id == company_id).order_by(AnomalyReview.id).all()


def _reconciled(db, company, expenses, severity=Severity.HIGH):
    findings = [_finding(expense, RuleType.DUPLICATE, severity) for expense in expenses]
    review_service.reconcile_findings(db, company.id, findings)
    db.commit()
    return _reviews_for(db, company.id)


def test_reconcile_is_idempotent(sqlite_session):
    company, expenses = _seed(sqlite_session)
    findings = [
        _finding(expenses[0], RuleType.DUPLICATE, Severity.HIGH),
        _finding(expenses[1], RuleType.DUPLICATE, Severity.HIGH),
        _finding(expenses[1], RuleType.WEEKEND_EXPENSE, Severity.LOW),
    ]

    first = review_service.reconcile_findings(sqlite_session, company.id, findings)
    sqlite_session.commit()
    second = review_service.reconcile_findings(sqlite_session, company.id, findings)
    sqlite_session.commit()

    assert (first.created, first.existing, first.conflicts, first.created_high) == (3, 0, 0, 2)
    assert (second.created, second.existing, second.conflicts) == (0, 3, 0)
    reviews = _reviews_for(sqlite_session, company.id)
    assert len(reviews) == 3
    assert {r.status for r in reviews} == {"pending"}


def test_reconcile_never_reverts_terminal_reviews(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=1)
    (review,) = _reconciled(sqlite_session, company, expenses)
    review_service.transition_review(
        sqlite_session, company.id, review.id, status="dismissed", actor="user-1", notes="known vendor"
    )

    summary = review_service.reconcile_findings(
        sqlite_session, company.id, [_finding(expenses[0], RuleType.DUPLICATE, Severity.HIGH)]
    )
    sqlite_session.commit()

    assert summary.created == 0
    sqlite_session.refresh(review)
    assert review.status == "dismissed"
    assert review.resolution_notes == "known vendor"


def test_single_transition_sets_reviewer_and_audits(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=1)
    (review,) = _reconciled(sqlite_session, company, expenses)

    result = review_service.transition_review(
        sqlite_session, company.id, review.id, status="reviewed", actor="user-7", notes="receipt checked"
    )

    assert result.warnings == []
    assert result.review["status"] == "reviewed"
    assert result.review["reviewed_by"] == "user-7"
    assert result.review["reviewed_at"] is not None
    audit = sqlite_session.query(AuditLog).filter_by(record_id=review.id).all()
    assert [(a.event_type, a.actor) for a in audit] == [("anomaly_reviewed", "user-7")]
    assert audit[0].before_state == {"status": "pending"}
    assert audit[0].after_state["status"] == "reviewed"


def test_terminal_review_rejects_further_transitions(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=1)
    (review,) = _reconciled(sqlite_session, company, expenses)
    review_service.transition_review(sqlite_session, company.id, review.id, status="escalated", actor="user-1")

    with pytest.raises(TransitionRejected) as exc:
        review_service.transition_review(sqlite_session, company.id, review.id, status="reviewed", actor="user-2")

    assert exc.value.current_status == "escalated"
    sqlite_session.refresh(review)
    assert review.status == "escalated"
    assert review.reviewed_by == "user-1"
    assert sqlite_session.query(AuditLog).filter_by(record_id=review.id).count() == 1


def test_transition_to_pending_is_rejected(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=1)
    (review,) = _reconciled(sqlite_session, company, expenses)

    with pytest.raises(TransitionRejected):
        review_service.transition_review(sqlite_session, company.id, review.id, status="pending", actor="user-1")


def test_transition_requires_actor_and_known_review(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=1)
    (review,) = _reconciled(sqlite_session, company, expenses)
    other, _ = _seed(sqlite_session, expense_count=0)

    with pytest.raises(HTTPException) as missing_actor:
        review_service.transition_review(sqlite_session, company.id, review.id, status="reviewed", actor=" ")
    with pytest.raises(HTTPException) as bad_status:
        review_service.transition_review(sqlite_session, company.id, review.id, status="approved", actor="u")
    with pytest.raises(HTTPException) as wrong_company:
        review_service.transition_review(sqlite_session, other.id, review.id, status="reviewed", actor="u")

    assert missing_actor.value.status_code == 400
    assert bad_status.value.status_code == 400
    assert wrong_company.value.status_code == 404


def test_audit_failure_is_a_warning_and_keeps_status(sqlite_session, monkeypatch):
    company, expenses = _seed(sqlite_session, expense_count=1)
    (review,) = _reconciled(sqlite_session, company, expenses)

    def _broken_audit(*_args, **_kwargs):
        raise SQLAlchemyError("audit table unavailable")

    monkeypatch.setattr(audit_service, "log_audit_event", _broken_audit)

    result = review_service.transition_review(
        sqlite_session, company.id, review.id, status="dismissed", actor="user-1"
    )

    assert len(result.warnings) == 1
    assert result.warnings[0].endswith(": SQLAlchemyError")
    sqlite_session.expire_all()
    assert sqlite_session.get(AnomalyReview, review.id).status == "dismissed"
    assert sqlite_session.query(AuditLog).filter_by(record_id=review.id).count() == 0


def test_audit_warning_hides_statement_and_parameters(sqlite_session, monkeypatch):
    company, expenses = _seed(sqlite_session, expense_count=1)
    (review,) = _reconciled(sqlite_session, company, expenses)

    def _failing_insert(*_args, **_kwargs):
        raise OperationalError(
            "INSERT INTO audit_logs (reason) VALUES (?)",
            ("private reviewer note",),
            sqlite3.OperationalError("disk I/O error"),
        )

    monkeypatch.setattr(audit_service, "log_audit_event", _failing_insert)

    result = review_service.transition_review(
        sqlite_session, company.id, review.id, status="reviewed", actor="user-1", notes="private reviewer note"
    )

    (warning,) = result.warnings
    assert warning.endswith(": OperationalError")
    assert "INSERT" not in warning
    assert "private reviewer note" not in warning


def test_bulk_only_touches_pending_reviews(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=4)
    reviews = _reconciled(sqlite_session, company, expenses)
    escalated = reviews[0]
    review_service.transition_review(sqlite_session, company.id, escalated.id, status="escalated", actor="lead")

    requested = [r.id for r in reviews] + ["no-such-review"]
    result = review_service.bulk_transition(
        sqlite_session, company.id, requested, status="dismissed", actor="user-3", notes="batch cleanup"
    )

    pending_ids = sorted(r.id for r in reviews[1:])
    assert result.requested == 5
    assert result.updated == 3
    assert sorted(result.updated_ids) == pending_ids
    assert set(result.skipped_ids) == {escalated.id, "no-such-review"}

    sqlite_session.expire_all()
    assert sqlite_session.get(AnomalyReview, escalated.id).status == "escalated"
    for review_id in pending_ids:
        row = sqlite_session.get(AnomalyReview, review_id)
        assert (row.status, row.reviewed_by, row.resolution_notes) == ("dismissed", "user-3", "batch cleanup")
    bulk_events = sqlite_session.query(AuditLog).filter_by(
        company_id=company.id, event_type="bulk_anomaly_dismissed"
    )
    assert bulk_events.count() == 3


def test_bulk_rejects_escalation_target(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=1)
    reviews = _reconciled(sqlite_session, company, expenses)

    with pytest.raises(HTTPException) as exc:
        review_service.bulk_transition(
            sqlite_session, company.id, [reviews[0].id], status="escalated", actor="user-1"
        )

    assert exc.value.status_code == 400


def test_create_if_absent_recovers_from_lost_race(sqlite_session, monkeypatch):
    company, expenses = _seed(sqlite_session, expense_count=1)
    (existing,) = _reconciled(sqlite_session, company, expenses)
    real_find = review_service._find_review
    calls = []

    def _stale_then_real(*args):
        calls.append(args)
        if len(calls) == 1:
            return None
        return real_find(*args)

    monkeypatch.setattr(review_service, "_find_review", _stale_then_real)

    review, created = review_service.create_if_absent(
        sqlite_session,
        company.id,
        expense_id=expenses[0].id,
        anomaly_type=RuleType.DUPLICATE.value,
        severity="high",
    )

    assert created is False
    assert review.id == existing.id
    assert len(calls) == 2


def test_repeated_conflict_is_counted_not_raised(sqlite_session, monkeypatch):
    company, expenses = _seed(sqlite_session, expense_count=2)
    _reconciled(sqlite_session, company, expenses[:1])
    monkeypatch.setattr(review_service, "_find_review", lambda *args: None)

    with pytest.raises(LedgerConflict):
        review_service.create_if_absent(
            sqlite_session,
            company.id,
            expense_id=expenses[0].id,
            anomaly_type=RuleType.DUPLICATE.value,
            severity="high",
        )

    summary = review_service.reconcile_findings(
        sqlite_session,
        company.id,
        [_finding(e, RuleType.DUPLICATE, Severity.HIGH) for e in expenses],
    )
    sqlite_session.commit()

    assert (summary.created, summary.conflicts) == (1, 1)
    assert len(_reviews_for(sqlite_session, company.id)) == 2


def test_list_and_stats(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=3)
    findings = [
        _finding(expenses[0], RuleType.DUPLICATE, Severity.HIGH),
        _finding(expenses[1], RuleType.DUPLICATE, Severity.HIGH),
        _finding(expenses[2], RuleType.ROUND_AMOUNT, Severity.LOW),
    ]
    review_service.reconcile_findings(sqlite_session, company.id, findings)
    sqlite_session.commit()
    first = review_service.list_reviews(sqlite_session, company.id, status="pending")[0]
    review_service.transition_review(sqlite_session, company.id, first["id"], status="escalated", actor="u")

    pending = review_service.list_reviews(sqlite_session, company.id, status="pending")
    stats = review_service.review_stats(sqlite_session, company.id)

    assert len(pending) == 2
    assert pending[0]["expense"]["submitter_name"] == "Sam Submitter"
    counts = {key: stats[key] for key in ("pending", "reviewed", "dismissed", "escalated", "total")}
    assert counts == {"pending": 2, "reviewed": 0, "dismissed": 0, "escalated": 1, "total": 3}
    expected_high = sum(
        1 for item in review_service.list_reviews(sqlite_session, company.id, status="pending")
        if item["severity"] == "high"
    )
    assert stats["high_severity_pending"] == expected_high
    assert len(review_service.pending_high_reviews(sqlite_session, company.id)) == expected_high


def test_audit_reason_column_holds_long_notes():
    assert isinstance(AuditLog.__table__.c.reason.type, Text)


def test_longest_allowed_note_is_audited(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=3)
    single, *batch = _reconciled(sqlite_session, company, expenses)
    note = "n" * MAX_NOTES_LENGTH

    single_result = review_service.transition_review(
        sqlite_session, company.id, single.id, status="escalated", actor="user-1", notes=note
    )
    bulk_result = review_service.bulk_transition(
        sqlite_session, company.id, [r.id for r in batch], status="reviewed", actor="user-1", notes=note
    )

    assert single_result.warnings == []
    assert bulk_result.warnings == []
    rows = sqlite_session.query(AuditLog).filter(AuditLog.record_id.in_([single.id] + [r.id for r in batch])).all()
    assert len(rows) == 3
    assert all(row.reason == note for row in rows)
    assert all(row.after_state["resolution_notes"] == note for row in rows)


def test_review_history_pairs_statuses(sqlite_session):
    company, expenses = _seed(sqlite_session, expense_count=1)
    (review,) = _reconciled(sqlite_session, company, expenses)
    review_service.transition_review(
        sqlite_session, company.id, review.id, status="dismissed", actor="user-4", notes="duplicate receipt"
    )

    history = review_service.review_history(sqlite_session, company.id, review.id)

    assert [(h["action"], h["from_status"], h["to_status"], h["actor"], h["notes"]) for h in history] == [
        ("anomaly_dismissed", "pending", "dismissed", "user-4", "duplicate receipt")
    ]
    other, _ = _seed(sqlite_session, expense_count=0)
    with pytest.raises(HTTPException) as exc:
        review_service.review_history(sqlite_session, other.id, review.id)
    assert exc.value.status_code == 404
