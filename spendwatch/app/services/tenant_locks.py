from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from spendwatch.app.errors import OperationTimeout


class TenantLockRegistry:
    """
    One lock per company id. Scans and review writes for the same company are
    serialized; different companies never wait on each other.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, company_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(company_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[company_id] = lock
            return lock

    @contextmanager
    def hold(
        self,
        company_id: str,
        *,
        timeout: Optional[float] = None,
        error: type[OperationTimeout] = OperationTimeout,
    ) -> Iterator[None]:
        lock = self._lock_for(company_id)
        acquired = lock.acquire(timeout=max(timeout, 0.0)) if timeout is not None else lock.acquire()
        if not acquired:
            raise error(f"timed out waiting for company '{company_id}' lock")
        try:
            yield
        finally:
            lock.release()


tenant_locks = TenantLockRegistry()
