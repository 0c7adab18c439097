from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from spendwatch.app.db import get_db
from spendwatch.app.services import audit_service

router = APIRouter(prefix="/api/audit", tags=["audit"])


class AuditEntryOut(BaseModel):
    id: str
    action: str
    table_name: str
    record_id: Optional[str] = None
    actor: str
    notes: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    at: datetime


@router.get("/{company_id}", response_model=List[AuditEntryOut])
def list_audit_entries(
    company_id: str,
    table_name: Optional[Literal["anomaly_reviews", "anomaly_detection_settings"]] = Query(None),
    record_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return audit_service.list_audit_entries(
        db,
        company_id,
        table_name=table_name,
        record_id=record_id,
        action=action,
        since=since,
        limit=limit,
    )
