from __future__ import annotations

import dataclasses
import hmac
import threading
import uuid
from datetime import timedelta
from typing import Any

from gitsync.schemas.jobs import (
    EnqueueSyncJob,
    QueueDepth,
    SyncFailure,
    SyncJob,
    SyncJobStatus,
    SyncJobType,
)
from gitsync.services.metrics import SyncMetrics
from gitsync.services.repository import (
    DEAD_LETTER_LIST_DEFAULT,
    DEAD_LETTER_LIST_MAX,
    DEFAULT_STUCK_THRESHOLD,
    InstallationRecord,
    RepoBinding,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    RetryPolicy,
    build_attempt_record,
    parse_job_type,
    resolve_failure,
)
from gitsync.services.ttl_stores import Clock, utc_now


class InMemoryRepository:
    """Process-local repository with the same surface as PostgresRepository.

    Used for local development and tests; every operation runs under one lock,
    which stands in for the row-level claim the database provides.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        metrics: SyncMetrics | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics or SyncMetrics()
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, SyncJob] = {}
        self._sequence: dict[str, int] = {}
        self._installations: dict[int, InstallationRecord] = {}
        self._bindings: dict[tuple[str, str], RepoBinding] = {}

    async def close(self) -> None:
        return None

    def add_binding(self, binding: RepoBinding) -> None:
        with self._lock:
            self._bindings[(binding.org_id, binding.project_id)] = _copy_binding(binding)

    def update_binding(self, *, org_id: str, project_id: str, **changes: Any) -> RepoBinding:
        with self._lock:
            current = self._bindings.get((org_id, project_id))
            if current is None:
                raise RepositoryNotFoundError("project repository binding not found")
            updated = _copy_binding(dataclasses.replace(current, **changes))
            self._bindings[(org_id, project_id)] = updated
            return _copy_binding(updated)

    @property
    def jobs(self) -> list[SyncJob]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._ordered_jobs()]

    async def enqueue(self, job: EnqueueSyncJob) -> SyncJob:
        job_type = parse_job_type(job.job_type)
        org_id = (job.org_id or "").strip()
        if not org_id:
            raise RepositoryValidationError("org_id is required")

        now = self._clock()
        with self._lock:
            if job.source_event_id is not None:
                for existing in self._jobs.values():
                    if (
                        existing.org_id == org_id
                        and existing.job_type == job_type
                        and existing.source_event_id == job.source_event_id
                    ):
                        return existing.model_copy(deep=True)

            created = SyncJob(
                id=str(uuid.uuid4()),
                org_id=org_id,
                project_id=job.project_id,
                job_type=job_type,
                status=SyncJobStatus.QUEUED,
                payload=dict(job.payload or {}),
                source_event_id=job.source_event_id,
                max_attempts=self.retry_policy.resolve_max_attempts(job.max_attempts),
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            self._jobs[created.id] = created
            self._sequence[created.id] = len(self._sequence)
            return created.model_copy(deep=True)

    async def pickup_next(self, job_type: SyncJobType | str, *, org_id: str | None = None) -> SyncJob | None:
        parsed_type = parse_job_type(job_type)
        now = self._clock()
        with self._lock:
            candidates = [
                job
                for job in self._ordered_jobs()
                if job.status == SyncJobStatus.QUEUED
                and job.job_type == parsed_type
                and job.next_attempt_at <= now
                and (org_id is None or job.org_id == org_id)
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda item: (item.next_attempt_at, item.created_at, self._sequence[item.id]))
            job.status = SyncJobStatus.IN_PROGRESS
            job.lease_token = uuid.uuid4().hex
            job.updated_at = now
            claimed = job.model_copy(deep=True)

        self.metrics.record_picked(parsed_type.value)
        return claimed

    async def mark_completed(self, job_id: str, *, lease_token: str) -> SyncJob:
        now = self._clock()
        with self._lock:
            job = self._leased_job(job_id, lease_token)
            job.status = SyncJobStatus.COMPLETED
            job.completed_at = now
            job.error_class = None
            job.error_message = None
            job.lease_token = None
            job.updated_at = now
            completed = job.model_copy(deep=True)

        self.metrics.record_completed(completed.job_type.value)
        return completed

    async def record_failure(
        self,
        job_id: str,
        failure: SyncFailure,
        *,
        lease_token: str,
    ) -> SyncJob:
        now = self._clock()
        occurred_at = failure.occurred_at or now
        with self._lock:
            job = self._leased_job(job_id, lease_token)
            status, attempts, delay = resolve_failure(job, failure, self.retry_policy)
            next_attempt_at = now + delay if delay is not None else None
            job.attempt_history.append(
                build_attempt_record(
                    attempt=attempts,
                    failure=failure,
                    occurred_at=occurred_at,
                    next_attempt_at=next_attempt_at,
                )
            )
            job.status = status
            job.attempts = attempts
            if next_attempt_at is not None:
                job.next_attempt_at = next_attempt_at
            job.error_class = failure.error_class.strip() or None
            job.error_message = failure.error_message.strip() or None
            job.lease_token = None
            job.updated_at = now
            failed = job.model_copy(deep=True)

        self.metrics.record_failure(
            failed.job_type.value,
            dead_lettered=failed.status == SyncJobStatus.DEAD_LETTER,
        )
        return failed

    async def queue_depth(self, *, org_id: str | None = None) -> list[QueueDepth]:
        counts: dict[SyncJobType, dict[str, int]] = {}
        with self._lock:
            for job in self._jobs.values():
                if org_id is not None and job.org_id != org_id:
                    continue
                row = counts.setdefault(job.job_type, {"queued": 0, "in_progress": 0, "dead_letter": 0})
                if job.status.value in row:
                    row[job.status.value] += 1
        return [
            QueueDepth(job_type=job_type, **row)
            for job_type, row in sorted(counts.items(), key=lambda item: item[0].value)
        ]

    async def count_stuck_jobs(self, threshold: timedelta, *, org_id: str | None = None) -> int:
        if threshold <= timedelta(0):
            threshold = DEFAULT_STUCK_THRESHOLD
        cutoff = self._clock() - threshold
        with self._lock:
            return sum(
                1
                for job in self._jobs.values()
                if job.status == SyncJobStatus.IN_PROGRESS
                and job.updated_at < cutoff
                and (org_id is None or job.org_id == org_id)
            )

    async def get_latest_by_project_and_type(
        self,
        project_id: str,
        job_type: SyncJobType | str,
        *,
        org_id: str | None = None,
    ) -> SyncJob | None:
        parsed_type = parse_job_type(job_type)
        with self._lock:
            matches = [
                job
                for job in self._ordered_jobs()
                if job.project_id == project_id
                and job.job_type == parsed_type
                and (org_id is None or job.org_id == org_id)
            ]
            return matches[-1].model_copy(deep=True) if matches else None

    async def find_pending_repo_sync(
        self,
        *,
        org_id: str,
        project_id: str,
        branch: str,
        head_sha: str,
    ) -> SyncJob | None:
        with self._lock:
            for job in self._ordered_jobs():
                if (
                    job.org_id == org_id
                    and job.project_id == project_id
                    and job.job_type == SyncJobType.REPO_SYNC
                    and job.status in (SyncJobStatus.QUEUED, SyncJobStatus.IN_PROGRESS)
                    and job.payload.get("branch") == branch
                    and head_sha in (job.payload.get("after"), job.payload.get("detected_head_sha"))
                ):
                    return job.model_copy(deep=True)
        return None

    async def list_dead_letters(self, *, org_id: str, limit: int = DEAD_LETTER_LIST_DEFAULT) -> list[SyncJob]:
        if limit <= 0 or limit > DEAD_LETTER_LIST_MAX:
            limit = DEAD_LETTER_LIST_DEFAULT
        with self._lock:
            dead = [
                job
                for job in self._ordered_jobs()
                if job.org_id == org_id and job.status == SyncJobStatus.DEAD_LETTER
            ]
            dead.sort(key=lambda item: item.updated_at, reverse=True)
            return [job.model_copy(deep=True) for job in dead[:limit]]

    async def replay_dead_letter(self, job_id: str, *, org_id: str) -> SyncJob:
        now = self._clock()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.org_id != org_id:
                raise RepositoryNotFoundError("sync job not found")
            if job.status != SyncJobStatus.DEAD_LETTER:
                raise RepositoryConflictError(f"sync job is {job.status.value}, expected dead_letter")
            job.status = SyncJobStatus.QUEUED
            job.attempts = 0
            job.next_attempt_at = now
            job.error_class = None
            job.error_message = None
            job.attempt_history = []
            job.completed_at = None
            job.updated_at = now
            return job.model_copy(deep=True)

    async def get_installation_org_id(self, installation_id: int) -> str | None:
        with self._lock:
            record = self._installations.get(installation_id)
            return record.org_id if record else None

    async def upsert_installation(
        self,
        *,
        org_id: str,
        installation_id: int,
        account_login: str,
        account_type: str,
    ) -> InstallationRecord:
        record = InstallationRecord(
            org_id=org_id,
            installation_id=installation_id,
            account_login=account_login,
            account_type=account_type,
        )
        with self._lock:
            self._installations[installation_id] = record
        return record

    async def find_binding_by_repository(
        self,
        repository_full_name: str,
        *,
        org_id: str | None = None,
    ) -> RepoBinding | None:
        wanted = (repository_full_name or "").strip().lower()
        if not wanted:
            return None
        with self._lock:
            for binding in self._bindings.values():
                if (binding.repository_full_name or "").lower() != wanted:
                    continue
                if org_id is not None and binding.org_id != org_id:
                    continue
                return _copy_binding(binding)
        return None

    async def get_binding(self, *, org_id: str, project_id: str) -> RepoBinding | None:
        with self._lock:
            binding = self._bindings.get((org_id, project_id))
            return _copy_binding(binding) if binding is not None else None

    async def list_bindings_for_polling(self) -> list[RepoBinding]:
        with self._lock:
            return [_copy_binding(self._bindings[key]) for key in sorted(self._bindings)]

    def _ordered_jobs(self) -> list[SyncJob]:
        return sorted(self._jobs.values(), key=lambda job: self._sequence[job.id])

    def _leased_job(self, job_id: str, lease_token: str) -> SyncJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("sync job not found")
        if job.status != SyncJobStatus.IN_PROGRESS:
            raise RepositoryConflictError(f"sync job is {job.status.value}, expected in_progress")
        if not lease_token or not job.lease_token or not hmac.compare_digest(job.lease_token, lease_token):
            raise RepositoryConflictError("sync job lease is held by another worker")
        return job


def _copy_binding(binding: RepoBinding) -> RepoBinding:
    return dataclasses.replace(binding, active_branches=list(binding.active_branches))
