"""Periodic reconciliation of tracked branches against their last synced commit.

Webhooks are best-effort; the poller is the backstop that notices a dropped
push. For every enabled binding with a repository it reads the remote head of
each tracked branch and enqueues a ``repo_sync`` job when the head differs from
``last_synced_sha``. The job key ``poll:<project_id>:<branch>:<head_sha>`` is
deterministic, so repeated cycles collapse onto one job. A push delivery for
the same head uses its own key, so before enqueueing the poller looks for a
queued or running ``repo_sync`` on that branch whose ``after`` or
``detected_head_sha`` already matches and skips the branch when one exists.

``run_once`` is not re-entrant. ``start`` never overlaps cycles; any other
driver must guarantee single-flight itself.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace

from gitsync.schemas.jobs import EnqueueSyncJob, SyncJobType
from gitsync.services.repository import RepoBinding, tracked_branches
from gitsync.services.ttl_stores import Clock, utc_now

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

POLL_REASON = "poll_reconciler"
DEFAULT_INTERVAL = timedelta(hours=1)
DEFAULT_BRANCH_TIMEOUT = timedelta(seconds=10)
REPO_SYNC_MAX_ATTEMPTS = 5


@dataclass(slots=True)
class BranchError:
    project_id: str
    branch: str
    error: str


@dataclass(slots=True)
class DriftPollResult:
    started_at: datetime
    completed_at: datetime | None = None
    projects_scanned: int = 0
    projects_checked: int = 0
    branches_checked: int = 0
    drift_detected: int = 0
    jobs_enqueued: int = 0
    already_queued: int = 0
    branch_errors: list[BranchError] = field(default_factory=list)


@dataclass(slots=True)
class DriftPollSnapshot:
    last_run_at: datetime | None = None
    last_completed_at: datetime | None = None
    last_error: str | None = None
    projects_scanned: int = 0
    projects_checked: int = 0
    drift_detected: int = 0
    jobs_enqueued: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def poll_source_event_id(project_id: str, branch: str, head_sha: str) -> str:
    return f"poll:{project_id}:{branch}:{head_sha}"


class DriftPoller:
    def __init__(
        self,
        *,
        bindings: Any,
        sync_jobs: Any,
        branch_heads: Any,
        interval: timedelta = DEFAULT_INTERVAL,
        branch_timeout: timedelta = DEFAULT_BRANCH_TIMEOUT,
        clock: Clock = utc_now,
    ) -> None:
        self.bindings = bindings
        self.sync_jobs = sync_jobs
        self.branch_heads = branch_heads
        self.interval = interval if interval > timedelta(0) else DEFAULT_INTERVAL
        self.branch_timeout = branch_timeout if branch_timeout > timedelta(0) else DEFAULT_BRANCH_TIMEOUT
        self._clock = clock
        self._snapshot_lock = threading.Lock()
        self._snapshot = DriftPollSnapshot()

    def snapshot(self) -> DriftPollSnapshot:
        with self._snapshot_lock:
            return DriftPollSnapshot(**asdict(self._snapshot))

    async def run_once(self) -> DriftPollResult:
        with tracer.start_as_current_span("drift_poller.run_once") as span:
            result = DriftPollResult(started_at=self._clock())
            try:
                bindings: list[RepoBinding] = await self.bindings.list_bindings_for_polling()
            except Exception as exc:
                logger.exception("drift poll failed to list bindings")
                self._store_snapshot(
                    DriftPollSnapshot(
                        last_run_at=result.started_at,
                        last_completed_at=self._clock(),
                        last_error=str(exc) or exc.__class__.__name__,
                    )
                )
                raise

            for binding in bindings:
                result.projects_scanned += 1
                repository_full_name = (binding.repository_full_name or "").strip()
                if not binding.enabled or not repository_full_name:
                    continue

                result.projects_checked += 1
                for branch in tracked_branches(binding):
                    await self._check_branch(binding, repository_full_name, branch, result)

            result.completed_at = self._clock()
            span.set_attribute("drift.projects_checked", result.projects_checked)
            span.set_attribute("drift.jobs_enqueued", result.jobs_enqueued)
            self._store_snapshot(
                DriftPollSnapshot(
                    last_run_at=result.started_at,
                    last_completed_at=result.completed_at,
                    projects_scanned=result.projects_scanned,
                    projects_checked=result.projects_checked,
                    drift_detected=result.drift_detected,
                    jobs_enqueued=result.jobs_enqueued,
                )
            )
            logger.info(
                "drift poll completed scanned=%s checked=%s branches=%s drift=%s enqueued=%s errors=%s",
                result.projects_scanned,
                result.projects_checked,
                result.branches_checked,
                result.drift_detected,
                result.jobs_enqueued,
                len(result.branch_errors),
            )
            return result

    async def start(self, stop_event: asyncio.Event) -> None:
        """Run a cycle every ``interval`` until ``stop_event`` is set."""
        interval_seconds = self.interval.total_seconds()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                return
            try:
                await self.run_once()
            except Exception:
                logger.exception("drift poll cycle failed")

    async def _check_branch(
        self,
        binding: RepoBinding,
        repository_full_name: str,
        branch: str,
        result: DriftPollResult,
    ) -> None:
        with tracer.start_as_current_span("drift_poller.check_branch") as span:
            span.set_attribute("gitsync.project_id", binding.project_id)
            span.set_attribute("git.branch", branch)
            result.branches_checked += 1

            try:
                head_sha = await asyncio.wait_for(
                    self.branch_heads.get_branch_head(repository_full_name, branch),
                    timeout=self.branch_timeout.total_seconds(),
                )
            except asyncio.TimeoutError:
                self._branch_failed(result, binding, branch, "timed out fetching branch head")
                return
            except Exception as exc:
                self._branch_failed(result, binding, branch, f"failed fetching branch head: {exc}")
                return

            head_sha = (head_sha or "").strip()
            if not head_sha:
                self._branch_failed(result, binding, branch, "empty branch head")
                return

            last_synced_sha = (binding.last_synced_sha or "").strip()
            if head_sha == last_synced_sha:
                return

            result.drift_detected += 1
            try:
                pending = await self.sync_jobs.find_pending_repo_sync(
                    org_id=binding.org_id,
                    project_id=binding.project_id,
                    branch=branch,
                    head_sha=head_sha,
                )
            except Exception as exc:
                self._branch_failed(result, binding, branch, f"failed to look up pending repo sync: {exc}")
                return
            if pending is not None:
                result.already_queued += 1
                logger.info(
                    "drift already queued project_id=%s branch=%s head_sha=%s job_id=%s",
                    binding.project_id,
                    branch,
                    head_sha,
                    pending.id,
                )
                return

            polled_at = self._clock()
            try:
                await self.sync_jobs.enqueue(
                    EnqueueSyncJob(
                        org_id=binding.org_id,
                        project_id=binding.project_id,
                        job_type=SyncJobType.REPO_SYNC,
                        payload={
                            "reason": POLL_REASON,
                            "project_id": binding.project_id,
                            "repository_full_name": repository_full_name,
                            "branch": branch,
                            "last_synced_sha": last_synced_sha or None,
                            "detected_head_sha": head_sha,
                            "polled_at": polled_at.isoformat(),
                        },
                        source_event_id=poll_source_event_id(binding.project_id, branch, head_sha),
                        max_attempts=REPO_SYNC_MAX_ATTEMPTS,
                    )
                )
            except Exception as exc:
                self._branch_failed(result, binding, branch, f"failed to enqueue repo sync: {exc}")
                return

            result.jobs_enqueued += 1
            logger.info(
                "drift detected project_id=%s branch=%s last_synced_sha=%s head_sha=%s",
                binding.project_id,
                branch,
                last_synced_sha or None,
                head_sha,
            )

    @staticmethod
    def _branch_failed(result: DriftPollResult, binding: RepoBinding, branch: str, error: str) -> None:
        logger.warning("drift poll skipped project_id=%s branch=%s error=%s", binding.project_id, branch, error)
        result.branch_errors.append(BranchError(project_id=binding.project_id, branch=branch, error=error))

    def _store_snapshot(self, snapshot: DriftPollSnapshot) -> None:
        with self._snapshot_lock:
            self._snapshot = snapshot
