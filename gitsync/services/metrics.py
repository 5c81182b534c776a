from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

COUNTER_NAMES = ("picked", "completed", "retried", "dead_lettered", "throttled")


@dataclass(slots=True)
class QuotaSnapshot:
    limit: int
    remaining: int
    reset_at: datetime | None


class SyncMetrics:
    """In-process counters for sync job throughput and upstream quota."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: dict.fromkeys(COUNTER_NAMES, 0))
        self._quota: dict[str, QuotaSnapshot] = {}

    def record_picked(self, job_type: str) -> None:
        self._increment(job_type, "picked")

    def record_completed(self, job_type: str) -> None:
        self._increment(job_type, "completed")

    def record_failure(self, job_type: str, *, dead_lettered: bool) -> None:
        self._increment(job_type, "dead_lettered" if dead_lettered else "retried")

    def record_throttle(self, job_type: str) -> None:
        self._increment(job_type, "throttled")

    def record_quota(self, job_type: str, *, limit: int, remaining: int, reset_at: datetime | None) -> None:
        with self._lock:
            self._quota[job_type] = QuotaSnapshot(limit=limit, remaining=remaining, reset_at=reset_at)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "jobs": {job_type: dict(counters) for job_type, counters in sorted(self._counters.items())},
                "quota": {job_type: asdict(quota) for job_type, quota in sorted(self._quota.items())},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._quota.clear()

    def _increment(self, job_type: str, counter: str) -> None:
        with self._lock:
            self._counters[job_type][counter] += 1


@lru_cache
def get_sync_metrics() -> SyncMetrics:
    return SyncMetrics()
