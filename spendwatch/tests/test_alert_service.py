import threading
from datetime import date
from decimal import Decimal

import httpx
import pytest

from spendwatch.app.errors import AlertDeliveryFailed, AlertTimeout
from spendwatch.app.models import AnomalyReview, Company, Expense, NotificationLog, Profile, UserRole
from spendwatch.app.notifications import DeliveryOutcome, LogChannel, Recipient, WebhookChannel
from spendwatch.app.services import alert_service


def _seed(db):
    company = Company(name="Alert Co")
    other = Company(name="Elsewhere")
    db.add_all([company, other])
    db.flush()

    def _profile(company_id, name, email, role=None):
        profile = Profile(company_id=company_id, full_name=name, email=email)
        db.add(profile)
        db.flush()
        if role:
            db.add(UserRole(user_id=profile.id, role=role))
        return profile

    _profile(company.id, "Ada Admin", "ada@example.com", "admin")
    _profile(company.id, "Fin Manager", "fin@example.com", "finance_manager")
    _profile(company.id, "Eve Employee", "eve@example.com", "employee")
    _profile(company.id, "No Mail", None, "super_admin")
    _profile(other.id, "Other Admin", "other@example.com", "admin")
    submitter = _profile(company.id, "Sam Submitter", "sam@example.com")

    expenses = []
    for idx, amount in enumerate(["1200.00", "80.50", "45.00", "300.00"]):
        expense = Expense(
            company_id=company.id,
            description=f"Expense {idx}",
            amount=Decimal(amount),
            expense_date=date(2024, 3, 5),
            created_by=submitter.id,
        )
        db.add(expense)
        expenses.append(expense)
    db.flush()

    for expense, severity, status in zip(
        expenses,
        ["high", "high", "low", "high"],
        ["pending", "pending", "pending", "dismissed"],
    ):
        db.add(
            AnomalyReview(
                company_id=company.id,
                expense_id=expense.id,
                anomaly_type="duplicate",
                severity=severity,
                status=status,
            )
        )
    db.commit()
    return company


class FakeChannel:
    name = "fake"

    def __init__(self, failing=(), slow=(), delay=0.0):
        self.failing = set(failing)
        self.slow = set(slow)
        self.delay = delay
        self.payloads = []
        self.release = threading.Event()

    def send(self, recipient, payload):
        self.payloads.append(payload)
        if recipient.email in self.slow:
            self.release.wait(self.delay)
        if recipient.email in self.failing:
            raise AlertDeliveryFailed(f"mailbox {recipient.email} rejected the message")
        return DeliveryOutcome(recipient=recipient, delivered=True)


def _logs(db, company_id):
    return (
        db.query(NotificationLog)
        .filter(NotificationLog.company_id == company_id)
        .order_by(NotificationLog.recipient_email)
        .all()
    )


def test_recipients_are_tenant_admins_with_email(sqlite_session):
    company = _seed(sqlite_session)

    recipients = alert_service.resolve_recipients(sqlite_session, company.id)

    assert [r.email for r in recipients] == ["ada@example.com", "fin@example.com"]


def test_one_failing_recipient_does_not_block_others(sqlite_session):
    company = _seed(sqlite_session)
    channel = FakeChannel(failing={"fin@example.com"})

    result = alert_service.dispatch_alerts(sqlite_session, company.id, channel=channel)

    assert (result.attempted, result.succeeded, result.failed) == (2, 1, 1)
    assert result.anomaly_count == 2
    payload = channel.payloads[0]
    assert payload["title"] == "2 High-Severity Expense Anomalies Detected"
    assert payload["total_amount"] == "1280.50"
    assert {item["rule_label"] for item in payload["items"]} == {"Potential Duplicate"}

    logs = _logs(sqlite_session, company.id)
    assert [(log.recipient_email, log.status) for log in logs] == [
        ("ada@example.com", "sent"),
        ("fin@example.com", "failed"),
    ]
    assert "rejected the message" in logs[1].error_message
    assert logs[0].error_message is None
    assert logs[0].metadata_json["anomaly_count"] == 2
    assert len(logs[0].metadata_json["expense_ids"]) == 2


def test_no_high_findings_is_a_no_op(sqlite_session):
    company = _seed(sqlite_session)
    sqlite_session.query(AnomalyReview).filter(AnomalyReview.company_id == company.id).update(
        {AnomalyReview.status: "reviewed"}
    )
    sqlite_session.commit()
    channel = FakeChannel()

    result = alert_service.dispatch_alerts(sqlite_session, company.id, channel=channel)

    assert (result.attempted, result.succeeded, result.failed) == (0, 0, 0)
    assert channel.payloads == []
    assert _logs(sqlite_session, company.id) == []


def test_timeout_logs_every_attempt_then_raises(sqlite_session):
    company = _seed(sqlite_session)
    channel = FakeChannel(slow={"fin@example.com"}, delay=5)

    try:
        with pytest.raises(AlertTimeout):
            alert_service.dispatch_alerts(sqlite_session, company.id, channel=channel, timeout=0.2)
    finally:
        channel.release.set()

    logs = _logs(sqlite_session, company.id)
    assert [(log.recipient_email, log.status) for log in logs] == [
        ("ada@example.com", "sent"),
        ("fin@example.com", "failed"),
    ]
    assert logs[1].error_message == alert_service.TIMEOUT_ERROR


def test_digest_title_and_single_item_wording():
    review = AnomalyReview(id="r1", company_id="c1", expense_id="e1", anomaly_type="round_amount", severity="high")
    expenses = {"e1": {"amount": "500.00", "description": "Deposit"}}

    payload = alert_service.build_payload([review], expenses, kind="digest")

    assert payload["title"] == "Daily Digest: 1 High-Severity Expense Anomaly Detected"
    assert payload["message"] == "1 high-severity anomaly totaling $500.00 need review."
    assert payload["items"][0]["rule_label"] == "Round Amount"


def test_webhook_channel_posts_and_retries_once():
    calls = []

    def _handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(502)
        return httpx.Response(202)

    client = httpx.Client(transport=httpx.MockTransport(_handler))
    channel = WebhookChannel(url="https://relay.example.com/alerts", client=client)
    recipient = Recipient(user_id="u1", email="ada@example.com", name="Ada")

    outcome = channel.send(recipient, {"title": "hello"})

    assert outcome.delivered is True
    assert len(calls) == 2
    assert calls[1].url == "https://relay.example.com/alerts"


def test_webhook_channel_raises_after_second_failure():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    channel = WebhookChannel(url="https://relay.example.com/alerts", client=client)

    with pytest.raises(AlertDeliveryFailed):
        channel.send(Recipient(user_id="u1", email="ada@example.com"), {"title": "hello"})


def test_log_channel_outcomes_are_logged_not_sent(sqlite_session):
    company = _seed(sqlite_session)

    result = alert_service.dispatch_alerts(sqlite_session, company.id, channel=LogChannel())

    assert (result.attempted, result.succeeded, result.failed, result.logged) == (2, 0, 0, 2)
    assert {outcome["status"] for outcome in result.outcomes} == {"logged"}
    assert [(log.channel, log.status) for log in _logs(sqlite_session, company.id)] == [
        ("log", "logged"),
        ("log", "logged"),
    ]


def test_send_finishing_after_deadline_reports_real_outcome():
    channel = FakeChannel(slow={"slow@example.com"}, delay=5)
    recipients = [
        Recipient(user_id="u1", email="fast@example.com"),
        Recipient(user_id="u2", email="slow@example.com"),
    ]
    late = []
    reported = threading.Event()

    def _on_late(outcome):
        late.append(outcome)
        reported.set()

    try:
        outcomes, timed_out = alert_service.fan_out(
            channel, recipients, {"title": "t"}, timeout=0.2, max_workers=2, on_late=_on_late
        )
    finally:
        channel.release.set()

    assert timed_out is True
    assert [o.status for o in outcomes] == ["sent", "failed"]
    assert outcomes[1].error == alert_service.TIMEOUT_ERROR
    assert reported.wait(2)
    assert [(o.recipient.email, o.delivered) for o in late] == [("slow@example.com", True)]
