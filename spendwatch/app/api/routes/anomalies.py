from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from spendwatch.app.api.deps import get_current_actor
from spendwatch.app.api.routes.audit import AuditEntryOut
from spendwatch.app.db import get_db
from spendwatch.app.services import alert_service, review_service, scan_service, settings_service

router = APIRouter(prefix="/api/anomalies", tags=["anomalies"])

MAX_NOTES_LENGTH = 2000


class SettingsOut(BaseModel):
    company_id: str
    id: Optional[str] = None
    is_default: bool
    version: int
    updated_by: Optional[str] = None
    updated_at: Optional[str] = None
    settings: Dict[str, Any]


class ScanIn(BaseModel):
    alert: bool = False
    window_days: Optional[int] = Field(default=None, ge=1, le=365)
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=300)


class ExpenseSummaryOut(BaseModel):
    id: str
    description: str
    amount: str
    expense_date: str
    department: Optional[str] = None
    created_by: Optional[str] = None
    category_name: Optional[str] = None
    submitter_name: Optional[str] = None


class ReviewOut(BaseModel):
    id: str
    company_id: str
    expense_id: str
    anomaly_type: str
    severity: str
    status: str
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    resolution_notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    expense: Optional[ExpenseSummaryOut] = None


class ReviewStatsOut(BaseModel):
    total: int
    pending: int
    reviewed: int
    dismissed: int
    escalated: int
    high_severity_pending: int


class TransitionIn(BaseModel):
    status: Literal["reviewed", "dismissed", "escalated"]
    notes: Optional[str] = Field(default=None, max_length=MAX_NOTES_LENGTH)


class TransitionOut(BaseModel):
    review: ReviewOut
    warnings: List[str] = Field(default_factory=list)


class BulkTransitionIn(BaseModel):
    review_ids: List[str] = Field(..., min_length=1, max_length=500)
    status: Literal["reviewed", "dismissed"]
    notes: Optional[str] = Field(default=None, max_length=MAX_NOTES_LENGTH)


class BulkTransitionOut(BaseModel):
    status: str
    requested: int
    updated: int
    updated_ids: List[str]
    skipped_ids: List[str]
    warnings: List[str] = Field(default_factory=list)


class AlertIn(BaseModel):
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=120)


class DispatchOut(BaseModel):
    attempted: int
    succeeded: int
    failed: int
    logged: int = 0
    anomaly_count: int
    outcomes: List[Dict[str, Any]]


# -------------------------
# Settings
# -------------------------

@router.get("/{company_id}/settings", response_model=SettingsOut)
def get_settings(company_id: str, db: Session = Depends(get_db)):
    return settings_service.get_settings(db, company_id)


@router.put("/{company_id}/settings", response_model=SettingsOut)
def update_settings(
    company_id: str,
    changes: Dict[str, Any],
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor),
):
    return settings_service.update_settings(db, company_id, changes, updated_by=actor)


@router.post("/{company_id}/settings/reset", response_model=SettingsOut)
def reset_settings(
    company_id: str,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor),
):
    return settings_service.reset_settings(db, company_id, updated_by=actor)


# -------------------------
# Scan
# -------------------------

@router.post("/{company_id}/scan")
def run_scan(
    company_id: str,
    req: Optional[ScanIn] = None,
    db: Session = Depends(get_db),
    _actor: str = Depends(get_current_actor),
):
    req = req or ScanIn()
    result = scan_service.scan_and_reconcile(
        db,
        company_id,
        timeout=req.timeout_seconds,
        window_days=req.window_days,
        alert=req.alert,
    )
    return result.as_dict()


# -------------------------
# Reviews
# -------------------------

@router.get("/{company_id}/reviews", response_model=List[ReviewOut])
def list_reviews(
    company_id: str,
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    return review_service.list_reviews(db, company_id, status=status)


@router.get("/{company_id}/reviews/stats", response_model=ReviewStatsOut)
def review_stats(company_id: str, db: Session = Depends(get_db)):
    return review_service.review_stats(db, company_id)


@router.post("/{company_id}/reviews/bulk", response_model=BulkTransitionOut)
def bulk_transition(
    company_id: str,
    req: BulkTransitionIn,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor),
):
    result = review_service.bulk_transition(
        db,
        company_id,
        req.review_ids,
        status=req.status,
        actor=actor,
        notes=req.notes,
    )
    return BulkTransitionOut(
        status=result.status,
        requested=result.requested,
        updated=result.updated,
        updated_ids=result.updated_ids,
        skipped_ids=result.skipped_ids,
        warnings=result.warnings,
    )


@router.post("/{company_id}/reviews/{review_id}/transition", response_model=TransitionOut)
def transition_review(
    company_id: str,
    review_id: str,
    req: TransitionIn,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor),
):
    result = review_service.transition_review(
        db,
        company_id,
        review_id,
        status=req.status,
        actor=actor,
        notes=req.notes,
    )
    return TransitionOut(review=ReviewOut(**result.review), warnings=result.warnings)


@router.get("/{company_id}/reviews/{review_id}/history", response_model=List[AuditEntryOut])
def review_history(company_id: str, review_id: str, db: Session = Depends(get_db)):
    return review_service.review_history(db, company_id, review_id)


# -------------------------
# Alerts
# -------------------------

@router.post("/{company_id}/alerts", response_model=DispatchOut)
def send_alerts(
    company_id: str,
    req: Optional[AlertIn] = None,
    db: Session = Depends(get_db),
    _actor: str = Depends(get_current_actor),
):
    req = req or AlertIn()
    return alert_service.dispatch_alerts(db, company_id, timeout=req.timeout_seconds).as_dict()
