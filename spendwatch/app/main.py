import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from spendwatch.app.api.routes.anomalies import router as anomalies_router
from spendwatch.app.api.routes.audit import router as audit_router
from spendwatch.app.errors import (
    AnomalyServiceError,
    ConfigInvalid,
    LedgerConflict,
    OperationTimeout,
    SnapshotUnavailable,
    TransitionRejected,
)


logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Comma-separated CORS_ALLOW_ORIGINS; empty means the API is served same-origin only."""
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _status_for(exc: AnomalyServiceError) -> int:
    if isinstance(exc, ConfigInvalid):
        return 422
    if isinstance(exc, (TransitionRejected, LedgerConflict)):
        return 409
    if isinstance(exc, SnapshotUnavailable):
        return 503
    if isinstance(exc, OperationTimeout):
        return 504
    return 500


async def anomaly_error_handler(_request: Request, exc: AnomalyServiceError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.warning("anomaly request failed with %s: %s", status_code, exc)
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, ConfigInvalid) and exc.errors:
        body["errors"] = exc.errors
    return JSONResponse(status_code=status_code, content=body)


app = FastAPI(title="SpendWatch Anomaly API", version="0.1.0")

CORS_ORIGINS = _cors_origins()
if CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["GET", "PUT", "POST"],
        allow_headers=["Content-Type", "X-User-Id"],
    )

app.add_exception_handler(AnomalyServiceError, anomaly_error_handler)

app.include_router(anomalies_router)
app.include_router(audit_router)
