from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from spendwatch.app.models import AuditLog, Company

REVIEW_TABLE = "anomaly_reviews"


def require_company(db: Session, company_id: str) -> Company:
    company = db.get(Company, company_id)
    if not company:
        raise HTTPException(404, "company not found")
    return company


def log_audit_event(
    db: Session,
    *,
    company_id: str,
    event_type: str,
    actor: str,
    table_name: str = REVIEW_TABLE,
    record_id: Optional[str] = None,
    reason: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    row = AuditLog(
        company_id=company_id,
        event_type=event_type,
        table_name=table_name,
        record_id=record_id,
        actor=actor,
        reason=reason,
        before_state=before,
        after_state=after,
    )
    db.add(row)
    db.flush()
    return row


def _status_of(state: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(state, dict):
        return None
    return state.get("status")


def _entry(row: AuditLog) -> Dict[str, Any]:
    on_review = row.table_name == REVIEW_TABLE
    return {
        "id": row.id,
        "action": row.event_type,
        "table_name": row.table_name,
        "record_id": row.record_id,
        "actor": row.actor,
        "notes": row.reason,
        "from_status": _status_of(row.before_state) if on_review else None,
        "to_status": _status_of(row.after_state) if on_review else None,
        "before_state": row.before_state,
        "after_state": row.after_state,
        "at": row.created_at,
    }


def list_audit_entries(
    db: Session,
    company_id: str,
    *,
    table_name: Optional[str] = None,
    record_id: Optional[str] = None,
    action: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 100,
    oldest_first: bool = False,
) -> List[Dict[str, Any]]:
    """
    Audit entries for one company. Review entries carry the from/to status
    pair of the transition they record; settings entries carry the full
    before/after config.
    """
    require_company(db, company_id)

    query = select(AuditLog).where(AuditLog.company_id == company_id)
    if table_name:
        query = query.where(AuditLog.table_name == table_name)
    if record_id:
        query = query.where(AuditLog.record_id == record_id)
    if action:
        query = query.where(AuditLog.event_type == action)
    if since:
        query = query.where(AuditLog.created_at >= since)

    if oldest_first:
        query = query.order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
    else:
        query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())

    rows = db.execute(query.limit(limit)).scalars().all()
    return [_entry(row) for row in rows]
