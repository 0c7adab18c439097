from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from spendwatch.app.db import session_scope
from spendwatch.app.models import Company
from spendwatch.app.notifications import NotificationChannel
from spendwatch.app.services import scan_service

logger = logging.getLogger(__name__)


@dataclass
class TenantRun:
    company_id: str
    ok: bool
    created: int = 0
    created_high: int = 0
    alerts_sent: int = 0
    error: Optional[str] = None


@dataclass
class DigestRun:
    started_at: datetime
    tenants: List[TenantRun] = field(default_factory=list)

    @property
    def failed(self) -> List[TenantRun]:
        return [tenant for tenant in self.tenants if not tenant.ok]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "tenants": len(self.tenants),
            "failed": [tenant.company_id for tenant in self.failed],
            "alerts_sent": sum(tenant.alerts_sent for tenant in self.tenants),
        }


def _all_company_ids(session_factory: Callable[[], ContextManager[Session]]) -> List[str]:
    with session_factory() as db:
        return list(db.execute(select(Company.id).order_by(Company.created_at.asc(), Company.id.asc())).scalars())


def _run_one(
    session_factory: Callable[[], ContextManager[Session]],
    company_id: str,
    *,
    now: Optional[datetime],
    channel: Optional[NotificationChannel],
    timeout: Optional[float],
) -> TenantRun:
    try:
        with session_factory() as db:
            result = scan_service.run_scheduled_scan(db, company_id, now=now, channel=channel, timeout=timeout)
    except Exception as exc:
        logger.exception("scheduled anomaly scan failed for company %s", company_id)
        return TenantRun(company_id=company_id, ok=False, error=f"{type(exc).__name__}: {exc}")
    return TenantRun(
        company_id=company_id,
        ok=True,
        created=result.reconcile.created,
        created_high=result.reconcile.created_high,
        alerts_sent=result.alerts.succeeded if result.alerts else 0,
    )


def run_anomaly_digest(
    company_ids: Optional[Iterable[str]] = None,
    *,
    session_factory: Callable[[], ContextManager[Session]] = session_scope,
    now: Optional[datetime] = None,
    channel: Optional[NotificationChannel] = None,
    timeout: Optional[float] = None,
) -> DigestRun:
    """
    Scheduled scan over every company (or the given ones). Each company gets
    its own session; a failing company is recorded and the run moves on.
    """
    run = DigestRun(started_at=now or datetime.now(timezone.utc))
    targets = list(company_ids) if company_ids is not None else _all_company_ids(session_factory)
    for company_id in targets:
        run.tenants.append(
            _run_one(session_factory, company_id, now=now, channel=channel, timeout=timeout)
        )
    logger.info(
        "anomaly digest run finished: %s companies, %s failed", len(run.tenants), len(run.failed)
    )
    return run


def main() -> None:
    parser = argparse.ArgumentParser(description="Scheduled anomaly scan and digest for all companies.")
    parser.add_argument("--company-id", action="append", help="Limit the run to this company (repeatable)")
    parser.add_argument("--timeout", type=float, default=None, help="Per-company scan timeout in seconds")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    run = run_anomaly_digest(args.company_id, timeout=args.timeout)

    print("Anomaly digest run")
    for tenant in run.tenants:
        if tenant.ok:
            print(
                f"  {tenant.company_id}: {tenant.created} new review(s), "
                f"{tenant.created_high} high, {tenant.alerts_sent} alert(s) sent"
            )
        else:
            print(f"  {tenant.company_id}: FAILED {tenant.error}")

    if run.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
