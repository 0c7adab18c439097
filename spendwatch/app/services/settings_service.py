from __future__ import annotations

import logging
from dataclasses import asdict, fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from spendwatch.app.detection.schema import DetectionConfig
from spendwatch.app.errors import ConfigInvalid
from spendwatch.app.models import AnomalyDetectionSettings
from spendwatch.app.services import audit_service

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = DetectionConfig()
CONFIG_FIELDS = tuple(f.name for f in fields(DetectionConfig))
LIST_FIELDS = {"threshold_limits", "round_amount_divisors"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _positive_sorted(values: List[Decimal], name: str) -> List[Decimal]:
    if not values:
        raise ValueError(f"{name} must not be empty")
    if any(v <= 0 for v in values):
        raise ValueError(f"{name} must only contain positive amounts")
    return sorted(set(values))


class DetectionSettingsPatch(BaseModel):
    """Partial update. Omitted or null fields keep their current value."""

    high_amount_threshold_percent: Optional[int] = Field(default=None, ge=100, le=1000)
    min_high_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    duplicate_window_hours: Optional[int] = Field(default=None, ge=1, le=168)
    rapid_succession_minutes: Optional[int] = Field(default=None, ge=5, le=120)
    rapid_succession_count: Optional[int] = Field(default=None, ge=2, le=50)
    approval_threshold_percent: Optional[int] = Field(default=None, ge=70, le=99)
    threshold_limits: Optional[List[Decimal]] = None
    round_amount_threshold: Optional[Decimal] = Field(default=None, ge=50, le=10000)
    round_amount_divisors: Optional[List[Decimal]] = None
    weekend_detection_enabled: Optional[bool] = None
    is_active: Optional[bool] = None
    analysis_window_days: Optional[int] = Field(default=None, ge=1, le=365)

    @field_validator("threshold_limits")
    @classmethod
    def validate_limits(cls, value: Optional[List[Decimal]]) -> Optional[List[Decimal]]:
        if value is None:
            return value
        return _positive_sorted(value, "threshold_limits")

    @field_validator("round_amount_divisors")
    @classmethod
    def validate_divisors(cls, value: Optional[List[Decimal]]) -> Optional[List[Decimal]]:
        if value is None:
            return value
        return _positive_sorted(value, "round_amount_divisors")


def _validation_errors(exc: ValidationError) -> List[Dict[str, object]]:
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "invalid value")}
        for err in exc.errors()
    ]


def parse_patch(changes: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(changes) - set(CONFIG_FIELDS))
    if unknown:
        raise ConfigInvalid(
            f"unknown settings: {', '.join(unknown)}",
            errors=[{"loc": [name], "msg": "unknown setting"} for name in unknown],
        )
    try:
        patch = DetectionSettingsPatch.model_validate(dict(changes))
    except ValidationError as exc:
        raise ConfigInvalid("invalid anomaly detection settings", errors=_validation_errors(exc)) from exc
    return patch.model_dump(exclude_none=True)


# -------------------------
# Row <-> config
# -------------------------

def config_from_row(row: AnomalyDetectionSettings) -> DetectionConfig:
    return DetectionConfig(
        high_amount_threshold_percent=row.high_amount_threshold_percent,
        min_high_amount=Decimal(str(row.min_high_amount)),
        duplicate_window_hours=row.duplicate_window_hours,
        rapid_succession_minutes=row.rapid_succession_minutes,
        rapid_succession_count=row.rapid_succession_count,
        approval_threshold_percent=row.approval_threshold_percent,
        threshold_limits=tuple(Decimal(str(v)) for v in row.threshold_limits),
        round_amount_threshold=Decimal(str(row.round_amount_threshold)),
        round_amount_divisors=tuple(Decimal(str(v)) for v in row.round_amount_divisors),
        weekend_detection_enabled=row.weekend_detection_enabled,
        is_active=row.is_active,
        analysis_window_days=row.analysis_window_days,
    )


def _apply_config(row: AnomalyDetectionSettings, config: DetectionConfig) -> None:
    for name in CONFIG_FIELDS:
        value = getattr(config, name)
        if name in LIST_FIELDS:
            # JSON column: keep exact decimal text
            value = [str(v) for v in value]
        setattr(row, name, value)


def _serialize_config(config: DetectionConfig) -> Dict[str, Any]:
    payload = asdict(config)
    payload["min_high_amount"] = str(config.min_high_amount)
    payload["round_amount_threshold"] = str(config.round_amount_threshold)
    payload["threshold_limits"] = [str(v) for v in config.threshold_limits]
    payload["round_amount_divisors"] = [str(v) for v in config.round_amount_divisors]
    return payload


def _serialize(company_id: str, config: DetectionConfig, row: Optional[AnomalyDetectionSettings]) -> Dict[str, Any]:
    return {
        "company_id": company_id,
        "id": row.id if row else None,
        "is_default": row is None,
        "version": row.version if row else 0,
        "updated_by": row.updated_by if row else None,
        "updated_at": row.updated_at.isoformat() if row and row.updated_at else None,
        "settings": _serialize_config(config),
    }


def _get_row(db: Session, company_id: str) -> Optional[AnomalyDetectionSettings]:
    return (
        db.execute(
            select(AnomalyDetectionSettings).where(AnomalyDetectionSettings.company_id == company_id)
        )
        .scalars()
        .first()
    )


# -------------------------
# Public API
# -------------------------

def get_config(db: Session, company_id: str) -> DetectionConfig:
    """Stored config for the company, or the documented defaults. Never raises for "not configured"."""
    row = _get_row(db, company_id)
    return config_from_row(row) if row else DEFAULT_CONFIG


def get_settings(db: Session, company_id: str) -> Dict[str, Any]:
    audit_service.require_company(db, company_id)
    row = _get_row(db, company_id)
    config = config_from_row(row) if row else DEFAULT_CONFIG
    return _serialize(company_id, config, row)


def _write(
    db: Session,
    company_id: str,
    config: DetectionConfig,
    *,
    updated_by: str,
    event_type: str,
) -> Dict[str, Any]:
    now = _now()
    row = _get_row(db, company_id)
    before = _serialize_config(config_from_row(row)) if row else None
    if row is None:
        row = AnomalyDetectionSettings(company_id=company_id, created_at=now, version=0)
        db.add(row)

    _apply_config(row, config)
    row.version = (row.version or 0) + 1
    row.updated_by = updated_by
    row.updated_at = now
    db.flush()

    audit_service.log_audit_event(
        db,
        company_id=company_id,
        event_type=event_type,
        actor=updated_by,
        table_name="anomaly_detection_settings",
        record_id=row.id,
        before=before,
        after=_serialize_config(config),
    )
    db.commit()
    logger.info("anomaly settings for company %s now at version %s", company_id, row.version)
    return _serialize(company_id, config, row)


def update_settings(
    db: Session,
    company_id: str,
    changes: Mapping[str, Any],
    *,
    updated_by: str,
) -> Dict[str, Any]:
    """Validate then upsert. Out-of-range values raise ConfigInvalid; nothing is clamped."""
    audit_service.require_company(db, company_id)
    patch = parse_patch(changes)
    merged = replace(get_config(db, company_id), **{
        name: tuple(value) if name in LIST_FIELDS else value
        for name, value in patch.items()
    })
    return _write(db, company_id, merged, updated_by=updated_by, event_type="anomaly_settings_updated")


def reset_settings(db: Session, company_id: str, *, updated_by: str) -> Dict[str, Any]:
    audit_service.require_company(db, company_id)
    if _get_row(db, company_id) is None:
        return _serialize(company_id, DEFAULT_CONFIG, None)
    return _write(db, company_id, DEFAULT_CONFIG, updated_by=updated_by, event_type="anomaly_settings_reset")
