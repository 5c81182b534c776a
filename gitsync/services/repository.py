from __future__ import annotations

import hmac
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from gitsync.core.config import get_settings
from gitsync.schemas.jobs import (
    EnqueueSyncJob,
    QueueDepth,
    SyncFailure,
    SyncJob,
    SyncJobStatus,
    SyncJobType,
)
from gitsync.services.metrics import SyncMetrics, get_sync_metrics

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
DEFAULT_STUCK_THRESHOLD = timedelta(minutes=15)
DEAD_LETTER_LIST_DEFAULT = 50
DEAD_LETTER_LIST_MAX = 200


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition or lease rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when input validation fails before persistence."""


@dataclass(slots=True)
class RepoBinding:
    org_id: str
    project_id: str
    repository_full_name: str | None
    default_branch: str = DEFAULT_BRANCH
    enabled: bool = False
    sync_mode: str = "sync"
    last_synced_sha: str | None = None
    last_synced_at: datetime | None = None
    conflict_state: str = "none"
    active_branches: list[str] = field(default_factory=list)


@dataclass(slots=True)
class InstallationRecord:
    org_id: str
    installation_id: int
    account_login: str
    account_type: str


@dataclass(slots=True)
class RetryPolicy:
    default_max_attempts: int = 5
    base_seconds: int = 30
    max_seconds: int = 600

    def resolve_max_attempts(self, requested: int) -> int:
        if requested > 0:
            return requested
        return max(1, self.default_max_attempts)

    def delay_for(self, attempts: int) -> timedelta:
        """Backoff before the next attempt once ``attempts`` failures have been recorded."""
        if self.base_seconds <= 0:
            return timedelta(0)
        delay = self.base_seconds * (2 ** max(0, attempts - 1))
        return timedelta(seconds=min(delay, max(0, self.max_seconds)))


def parse_job_type(value: SyncJobType | str) -> SyncJobType:
    if isinstance(value, SyncJobType):
        return value
    normalized = (value or "").strip().lower()
    try:
        return SyncJobType(normalized)
    except ValueError as exc:
        raise RepositoryValidationError(f"invalid job_type {value!r}") from exc


def tracked_branches(binding: RepoBinding) -> list[str]:
    """Default branch first, then active branches, without duplicates."""
    branches: list[str] = []
    for raw in [binding.default_branch or DEFAULT_BRANCH, *binding.active_branches]:
        branch = (raw or "").strip()
        if branch and branch not in branches:
            branches.append(branch)
    return branches


def resolve_failure(job: SyncJob, failure: SyncFailure, policy: RetryPolicy) -> tuple[SyncJobStatus, int, timedelta | None]:
    attempts = job.attempts + 1
    if failure.retryable and attempts < job.max_attempts:
        return SyncJobStatus.QUEUED, attempts, policy.delay_for(attempts)
    return SyncJobStatus.DEAD_LETTER, attempts, None


def build_attempt_record(
    *,
    attempt: int,
    failure: SyncFailure,
    occurred_at: datetime,
    next_attempt_at: datetime | None,
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "attempt": attempt,
        "error_class": failure.error_class.strip(),
        "error": failure.error_message.strip(),
        "retryable": failure.retryable,
        "occurred_at": occurred_at.isoformat(),
    }
    if next_attempt_at is not None:
        record["next_attempt_at"] = next_attempt_at.isoformat()
    return record


def _job_columns(alias: str = "") -> str:
    prefix = f"{alias}." if alias else ""
    return f"""
      {prefix}id::text as id,
      {prefix}org_id,
      {prefix}project_id,
      {prefix}job_type,
      {prefix}status,
      {prefix}payload,
      {prefix}source_event_id,
      {prefix}attempts,
      {prefix}max_attempts,
      {prefix}next_attempt_at,
      {prefix}lease_token,
      {prefix}error_class,
      {prefix}error_message,
      {prefix}attempt_history,
      {prefix}created_at,
      {prefix}updated_at,
      {prefix}completed_at
    """


_BINDING_COLUMNS = """
  b.org_id,
  b.project_id,
  b.repository_full_name,
  b.default_branch,
  b.enabled,
  b.sync_mode,
  b.last_synced_sha,
  b.last_synced_at,
  b.conflict_state,
  coalesce(
    (
      select array_agg(ab.branch_name order by ab.branch_name)
      from project_repo_active_branches ab
      where ab.org_id = b.org_id and ab.project_id = b.project_id
    ),
    array[]::text[]
  ) as active_branches
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        retry_policy: RetryPolicy,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.retry_policy = retry_policy
        self.metrics = metrics or get_sync_metrics()
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def enqueue(self, job: EnqueueSyncJob) -> SyncJob:
        """Insert a queued job, or return the existing one for the same source event."""
        job_type = parse_job_type(job.job_type)
        org_id = (job.org_id or "").strip()
        if not org_id:
            raise RepositoryValidationError("org_id is required")
        max_attempts = self.retry_policy.resolve_max_attempts(job.max_attempts)
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                insert into sync_jobs (org_id, project_id, job_type, payload, source_event_id, max_attempts)
                values ($1, $2, $3, $4::jsonb, $5, $6)
                on conflict (org_id, job_type, source_event_id) do nothing
                returning {_job_columns()}
                """,
                org_id,
                job.project_id,
                job_type.value,
                json.dumps(job.payload or {}),
                job.source_event_id,
                max_attempts,
            )
            if row is None:
                row = await conn.fetchrow(
                    f"""
                    select {_job_columns()}
                    from sync_jobs
                    where org_id = $1 and job_type = $2 and source_event_id = $3
                    """,
                    org_id,
                    job_type.value,
                    job.source_event_id,
                )
                if row is None:
                    raise RepositoryConflictError("sync job conflicted but could not be loaded")
                logger.info(
                    "sync job enqueue deduplicated job_id=%s job_type=%s source_event_id=%s",
                    row["id"],
                    job_type.value,
                    job.source_event_id,
                )
        return self._job_row_to_model(row)

    async def pickup_next(self, job_type: SyncJobType | str, *, org_id: str | None = None) -> SyncJob | None:
        parsed_type = parse_job_type(job_type)
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            with next_job as (
              select id
              from sync_jobs
              where status = 'queued'
                and job_type = $1
                and next_attempt_at <= now()
                and ($2::text is null or org_id = $2)
              order by next_attempt_at asc, created_at asc
              limit 1
              for update skip locked
            )
            update sync_jobs j
            set
              status = 'in_progress',
              lease_token = $3,
              updated_at = now()
            from next_job
            where j.id = next_job.id
            returning {_job_columns("j")}
            """,
            parsed_type.value,
            org_id,
            uuid.uuid4().hex,
        )
        if row is None:
            return None
        self.metrics.record_picked(parsed_type.value)
        return self._job_row_to_model(row)

    async def mark_completed(self, job_id: str, *, lease_token: str) -> SyncJob:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await self._fetch_job_for_update(conn, job_id)
                    self._check_lease(current, lease_token)
                    row = await conn.fetchrow(
                        f"""
                        update sync_jobs
                        set
                          status = 'completed',
                          completed_at = now(),
                          error_class = null,
                          error_message = null,
                          lease_token = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {_job_columns()}
                        """,
                        job_id,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("sync job not found") from exc

        job = self._job_row_to_model(row)
        self.metrics.record_completed(job.job_type.value)
        return job

    async def record_failure(
        self,
        job_id: str,
        failure: SyncFailure,
        *,
        lease_token: str,
    ) -> SyncJob:
        occurred_at = failure.occurred_at or datetime.now(timezone.utc)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await self._fetch_job_for_update(conn, job_id)
                    self._check_lease(current, lease_token)
                    status, attempts, delay = resolve_failure(current, failure, self.retry_policy)
                    next_attempt_at = datetime.now(timezone.utc) + delay if delay is not None else None
                    record = build_attempt_record(
                        attempt=attempts,
                        failure=failure,
                        occurred_at=occurred_at,
                        next_attempt_at=next_attempt_at,
                    )
                    row = await conn.fetchrow(
                        f"""
                        update sync_jobs
                        set
                          status = $2,
                          attempts = $3,
                          next_attempt_at = coalesce($4::timestamptz, next_attempt_at),
                          error_class = nullif($5, ''),
                          error_message = nullif($6, ''),
                          attempt_history = attempt_history || $7::jsonb,
                          lease_token = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {_job_columns()}
                        """,
                        job_id,
                        status.value,
                        attempts,
                        next_attempt_at,
                        failure.error_class.strip(),
                        failure.error_message.strip(),
                        json.dumps([record]),
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("sync job not found") from exc

        job = self._job_row_to_model(row)
        dead_lettered = job.status == SyncJobStatus.DEAD_LETTER
        self.metrics.record_failure(job.job_type.value, dead_lettered=dead_lettered)
        if dead_lettered:
            logger.warning(
                "sync job dead-lettered job_id=%s job_type=%s attempts=%s error_class=%s",
                job.id,
                job.job_type.value,
                job.attempts,
                job.error_class,
            )
        return job

    async def queue_depth(self, *, org_id: str | None = None) -> list[QueueDepth]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              job_type,
              count(*) filter (where status = 'queued') as queued,
              count(*) filter (where status = 'in_progress') as in_progress,
              count(*) filter (where status = 'dead_letter') as dead_letter
            from sync_jobs
            where ($1::text is null or org_id = $1)
            group by job_type
            order by job_type asc
            """,
            org_id,
        )
        return [
            QueueDepth(
                job_type=row["job_type"],
                queued=row["queued"],
                in_progress=row["in_progress"],
                dead_letter=row["dead_letter"],
            )
            for row in rows
        ]

    async def count_stuck_jobs(self, threshold: timedelta, *, org_id: str | None = None) -> int:
        if threshold <= timedelta(0):
            threshold = DEFAULT_STUCK_THRESHOLD
        pool = await self._get_pool()
        count = await pool.fetchval(
            """
            select count(*)
            from sync_jobs
            where status = 'in_progress'
              and updated_at < now() - ($1::double precision * interval '1 second')
              and ($2::text is null or org_id = $2)
            """,
            threshold.total_seconds(),
            org_id,
        )
        return int(count or 0)

    async def get_latest_by_project_and_type(
        self,
        project_id: str,
        job_type: SyncJobType | str,
        *,
        org_id: str | None = None,
    ) -> SyncJob | None:
        parsed_type = parse_job_type(job_type)
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_job_columns()}
            from sync_jobs
            where project_id = $1
              and job_type = $2
              and ($3::text is null or org_id = $3)
            order by created_at desc
            limit 1
            """,
            project_id,
            parsed_type.value,
            org_id,
        )
        return self._job_row_to_model(row) if row else None

    async def find_pending_repo_sync(
        self,
        *,
        org_id: str,
        project_id: str,
        branch: str,
        head_sha: str,
    ) -> SyncJob | None:
        """Queued or running repo_sync for ``branch`` that already targets ``head_sha``."""
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_job_columns()}
            from sync_jobs
            where org_id = $1
              and project_id = $2
              and job_type = 'repo_sync'
              and status in ('queued', 'in_progress')
              and payload->>'branch' = $3
              and $4::text in (payload->>'after', payload->>'detected_head_sha')
            order by created_at asc
            limit 1
            """,
            org_id,
            project_id,
            branch,
            head_sha,
        )
        return self._job_row_to_model(row) if row else None

    async def list_dead_letters(self, *, org_id: str, limit: int = DEAD_LETTER_LIST_DEFAULT) -> list[SyncJob]:
        if limit <= 0 or limit > DEAD_LETTER_LIST_MAX:
            limit = DEAD_LETTER_LIST_DEFAULT
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_job_columns()}
            from sync_jobs
            where org_id = $1 and status = 'dead_letter'
            order by updated_at desc
            limit $2
            """,
            org_id,
            limit,
        )
        return [self._job_row_to_model(row) for row in rows]

    async def replay_dead_letter(self, job_id: str, *, org_id: str) -> SyncJob:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await self._fetch_job_for_update(
                        conn,
                        job_id,
                        expected=SyncJobStatus.DEAD_LETTER,
                        org_id=org_id,
                    )
                    row = await conn.fetchrow(
                        f"""
                        update sync_jobs
                        set
                          status = 'queued',
                          attempts = 0,
                          next_attempt_at = now(),
                          error_class = null,
                          error_message = null,
                          attempt_history = '[]'::jsonb,
                          completed_at = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {_job_columns()}
                        """,
                        job_id,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("sync job not found") from exc
        logger.info("dead-letter replayed job_id=%s org_id=%s", job_id, org_id)
        return self._job_row_to_model(row)

    async def get_installation_org_id(self, installation_id: int) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            "select org_id from github_installations where installation_id = $1",
            installation_id,
        )

    async def upsert_installation(
        self,
        *,
        org_id: str,
        installation_id: int,
        account_login: str,
        account_type: str,
    ) -> InstallationRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into github_installations (installation_id, org_id, account_login, account_type)
            values ($1, $2, $3, $4)
            on conflict (installation_id)
            do update set
              org_id = excluded.org_id,
              account_login = excluded.account_login,
              account_type = excluded.account_type,
              updated_at = now()
            returning org_id, installation_id, account_login, account_type
            """,
            installation_id,
            org_id,
            account_login,
            account_type,
        )
        return InstallationRecord(
            org_id=row["org_id"],
            installation_id=row["installation_id"],
            account_login=row["account_login"],
            account_type=row["account_type"],
        )

    async def find_binding_by_repository(
        self,
        repository_full_name: str,
        *,
        org_id: str | None = None,
    ) -> RepoBinding | None:
        repository_full_name = (repository_full_name or "").strip()
        if not repository_full_name:
            return None
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_BINDING_COLUMNS}
            from project_repo_bindings b
            where lower(b.repository_full_name) = lower($1)
              and ($2::text is null or b.org_id = $2)
            order by b.updated_at desc
            limit 1
            """,
            repository_full_name,
            org_id,
        )
        return self._binding_row_to_record(row) if row else None

    async def get_binding(self, *, org_id: str, project_id: str) -> RepoBinding | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_BINDING_COLUMNS}
            from project_repo_bindings b
            where b.org_id = $1 and b.project_id = $2
            """,
            org_id,
            project_id,
        )
        return self._binding_row_to_record(row) if row else None

    async def list_bindings_for_polling(self) -> list[RepoBinding]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_BINDING_COLUMNS}
            from project_repo_bindings b
            order by b.org_id asc, b.project_id asc
            """
        )
        return [self._binding_row_to_record(row) for row in rows]

    async def _fetch_job_for_update(
        self,
        conn: asyncpg.Connection,
        job_id: str,
        *,
        expected: SyncJobStatus = SyncJobStatus.IN_PROGRESS,
        org_id: str | None = None,
    ) -> SyncJob:
        row = await conn.fetchrow(
            f"select {_job_columns()} from sync_jobs where id = $1::uuid for update",
            job_id,
        )
        if row is None:
            raise RepositoryNotFoundError("sync job not found")
        job = self._job_row_to_model(row)
        if org_id is not None and job.org_id != org_id:
            raise RepositoryNotFoundError("sync job not found")
        if job.status != expected:
            raise RepositoryConflictError(f"sync job is {job.status.value}, expected {expected.value}")
        return job

    @staticmethod
    def _check_lease(job: SyncJob, lease_token: str) -> None:
        if not lease_token or not job.lease_token or not hmac.compare_digest(job.lease_token, lease_token):
            raise RepositoryConflictError("sync job lease is held by another worker")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("GITSYNC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_model(row: asyncpg.Record) -> SyncJob:
        return SyncJob(
            id=row["id"],
            org_id=row["org_id"],
            project_id=row["project_id"],
            job_type=row["job_type"],
            status=row["status"],
            payload=_coerce_json(row["payload"], default={}),
            source_event_id=row["source_event_id"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_attempt_at=row["next_attempt_at"],
            lease_token=row["lease_token"],
            error_class=row["error_class"],
            error_message=row["error_message"],
            attempt_history=_coerce_json(row["attempt_history"], default=[]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _binding_row_to_record(row: asyncpg.Record) -> RepoBinding:
        return RepoBinding(
            org_id=row["org_id"],
            project_id=row["project_id"],
            repository_full_name=row["repository_full_name"],
            default_branch=row["default_branch"] or DEFAULT_BRANCH,
            enabled=bool(row["enabled"]),
            sync_mode=row["sync_mode"],
            last_synced_sha=row["last_synced_sha"],
            last_synced_at=row["last_synced_at"],
            conflict_state=row["conflict_state"],
            active_branches=list(row["active_branches"] or []),
        )


def _coerce_json(value: Any, *, default: Any) -> Any:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return default
    if value is None or not isinstance(value, type(default)):
        return default
    return value


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        retry_policy=RetryPolicy(
            default_max_attempts=settings.job_max_attempts,
            base_seconds=settings.job_retry_base_seconds,
            max_seconds=settings.job_retry_max_seconds,
        ),
    )
