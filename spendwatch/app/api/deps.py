# spendwatch/app/api/deps.py
from __future__ import annotations

from fastapi import HTTPException, Request


def get_current_actor(request: Request) -> str:
    """
    Reviewer identity for write endpoints.

    Authentication happens upstream; this service only needs a stable id to
    stamp on reviews and audit rows, read from X-User-Id.
    """
    actor = (request.headers.get("X-User-Id") or "").strip()
    if not actor:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    if len(actor) > 36:
        raise HTTPException(status_code=401, detail="Invalid X-User-Id header")
    return actor
