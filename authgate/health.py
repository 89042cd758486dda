"""Liveness aggregation for a worker process."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import logging
import os
import threading
import time
from typing import Any

import psutil

from .domain.contracts import CredentialStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MemoryUsage:
    rss_bytes: int
    vms_bytes: int


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    """Point-in-time health of one worker; computed on demand, never stored."""

    overall_status: str
    storage_reachable: bool
    uptime_seconds: float
    memory_usage: MemoryUsage
    pid: int = field(default_factory=os.getpid)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.overall_status == "ok"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["checked_at"] = self.checked_at.isoformat()
        return data


class HealthMonitor:
    """Probes the credential store and reports process vitals.

    The store probe runs on a dedicated thread so ``snapshot`` never waits
    longer than ``probe_timeout``. A probe that is still hanging from an
    earlier call is not stacked; the store is reported unreachable until it
    returns.
    """

    def __init__(self, store: CredentialStore, *, probe_timeout: float = 2.0) -> None:
        self._store = store
        self._probe_timeout = probe_timeout
        self._process = psutil.Process()
        self._started_at = self._process.create_time()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="health-probe")
        self._pending: Future[None] | None = None
        self._lock = threading.Lock()

    def snapshot(self) -> HealthSnapshot:
        reachable = self._probe_storage()
        memory = self._process.memory_info()
        return HealthSnapshot(
            overall_status="ok" if reachable else "degraded",
            storage_reachable=reachable,
            uptime_seconds=round(max(0.0, time.time() - self._started_at), 3),
            memory_usage=MemoryUsage(rss_bytes=memory.rss, vms_bytes=memory.vms),
        )

    def _probe_storage(self) -> bool:
        with self._lock:
            if self._pending is not None and not self._pending.done():
                logger.warning("previous storage probe still outstanding")
                return False
            probe = self._executor.submit(self._store.ping)
            self._pending = probe
        try:
            probe.result(timeout=self._probe_timeout)
        except FutureTimeout:
            logger.warning("storage probe timed out after %.1fs", self._probe_timeout)
            return False
        except Exception as exc:
            logger.warning("storage probe failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
