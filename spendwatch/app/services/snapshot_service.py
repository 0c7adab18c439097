from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from spendwatch.app.detection.schema import ExpenseRecord
from spendwatch.app.errors import SnapshotUnavailable
from spendwatch.app.models import Expense, ExpenseCategory, Profile


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ExpenseSnapshotProvider(Protocol):
    def fetch(self, company_id: str, since: date) -> List[ExpenseRecord]:
        """Expenses dated on or after `since`, enriched with category and submitter."""
        ...


class SqlExpenseSnapshotProvider:
    """Reads the expense store through the request's session. Never writes."""

    def __init__(self, db: Session):
        self.db = db

    def fetch(self, company_id: str, since: date) -> List[ExpenseRecord]:
        stmt = (
            select(Expense, ExpenseCategory.name, Profile.full_name)
            .outerjoin(ExpenseCategory, ExpenseCategory.id == Expense.category_id)
            .outerjoin(Profile, Profile.id == Expense.created_by)
            .where(Expense.company_id == company_id, Expense.expense_date >= since)
            .order_by(Expense.created_at.asc(), Expense.id.asc())
        )
        try:
            rows = self.db.execute(stmt).all()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SnapshotUnavailable(f"expense snapshot query failed: {exc}") from exc

        return [
            ExpenseRecord(
                id=expense.id,
                description=expense.description,
                amount=Decimal(str(expense.amount)),
                expense_date=expense.expense_date,
                created_at=_as_utc(expense.created_at),
                status=expense.status,
                department=expense.department,
                submitter_id=expense.created_by,
                submitter_name=full_name,
                category_id=expense.category_id,
                category_name=category_name,
            )
            for expense, category_name, full_name in rows
        ]


def expense_summaries(db: Session, expense_ids: List[str]) -> Dict[str, dict]:
    """Display fields keyed by expense id, for joining review rows back to expenses."""
    if not expense_ids:
        return {}
    stmt = (
        select(Expense, ExpenseCategory.name, Profile.full_name)
        .outerjoin(ExpenseCategory, ExpenseCategory.id == Expense.category_id)
        .outerjoin(Profile, Profile.id == Expense.created_by)
        .where(Expense.id.in_(expense_ids))
    )
    summaries = {}
    for expense, category_name, full_name in db.execute(stmt).all():
        summaries[expense.id] = {
            "id": expense.id,
            "description": expense.description,
            "amount": str(expense.amount),
            "expense_date": expense.expense_date.isoformat(),
            "department": expense.department,
            "created_by": expense.created_by,
            "category_name": category_name,
            "submitter_name": full_name,
        }
    return summaries


def window_start(today: date, window_days: int) -> date:
    return today - timedelta(days=window_days)
