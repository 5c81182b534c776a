from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from gitsync.schemas.health import SyncHealthReport
from gitsync.services.metrics import SyncMetrics
from gitsync.services.ttl_stores import Clock, utc_now

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_duration(raw: str) -> timedelta:
    """Parse ``90s``, ``15m``, ``1h30m`` style durations; the result must be positive."""
    text = (raw or "").strip().lower()
    if not text:
        raise ValueError("duration is required")

    total = timedelta(0)
    position = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration {raw!r}")
        total += _DURATION_UNITS[match.group(2)] * float(match.group(1))
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {raw!r}")
    if total <= timedelta(0):
        raise ValueError("duration must be positive")
    return total


class SyncHealthReporter:
    """Read-only aggregation of queue depth, stuck leases, metrics and poller state."""

    def __init__(
        self,
        *,
        repository: Any,
        metrics: SyncMetrics,
        poller_snapshot: Callable[[], dict[str, Any]],
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.metrics = metrics
        self.poller_snapshot = poller_snapshot
        self._clock = clock

    async def report(self, stuck_threshold: timedelta, *, org_id: str | None = None) -> SyncHealthReport:
        queue_depth = await self.repository.queue_depth(org_id=org_id)
        stuck_jobs = await self.repository.count_stuck_jobs(stuck_threshold, org_id=org_id)
        generated_at: datetime = self._clock()
        return SyncHealthReport(
            queue_depth=queue_depth,
            stuck_jobs=stuck_jobs,
            stuck_threshold_seconds=int(stuck_threshold.total_seconds()),
            metrics=self.metrics.snapshot(),
            poller=self.poller_snapshot(),
            generated_at=generated_at,
        )
