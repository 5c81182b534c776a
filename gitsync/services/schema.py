from __future__ import annotations

import asyncpg  # type: ignore[import-untyped]

SCHEMA_SQL = """
create table if not exists sync_jobs (
  id uuid primary key default gen_random_uuid(),
  org_id text not null,
  project_id text,
  job_type text not null check (job_type in ('webhook', 'repo_sync', 'issue_import')),
  status text not null default 'queued'
    check (status in ('queued', 'in_progress', 'completed', 'dead_letter')),
  payload jsonb not null default '{}'::jsonb,
  source_event_id text,
  attempts integer not null default 0,
  max_attempts integer not null default 5 check (max_attempts > 0),
  next_attempt_at timestamptz not null default now(),
  lease_token text,
  error_class text,
  error_message text,
  attempt_history jsonb not null default '[]'::jsonb,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  completed_at timestamptz
);

create unique index if not exists sync_jobs_source_event_key
  on sync_jobs (org_id, job_type, source_event_id);

create index if not exists sync_jobs_pickup_idx
  on sync_jobs (job_type, next_attempt_at, created_at)
  where status = 'queued';

create index if not exists sync_jobs_project_latest_idx
  on sync_jobs (project_id, job_type, created_at desc);

create table if not exists github_installations (
  installation_id bigint primary key,
  org_id text not null,
  account_login text not null,
  account_type text not null default 'Organization',
  connected_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table if not exists project_repo_bindings (
  org_id text not null,
  project_id text not null,
  repository_full_name text,
  default_branch text not null default 'main',
  enabled boolean not null default false,
  sync_mode text not null default 'sync',
  last_synced_sha text,
  last_synced_at timestamptz,
  conflict_state text not null default 'none',
  updated_at timestamptz not null default now(),
  primary key (org_id, project_id)
);

create index if not exists project_repo_bindings_repo_idx
  on project_repo_bindings (repository_full_name);

create table if not exists project_repo_active_branches (
  org_id text not null,
  project_id text not null,
  branch_name text not null,
  created_at timestamptz not null default now(),
  primary key (org_id, project_id, branch_name),
  foreign key (org_id, project_id) references project_repo_bindings (org_id, project_id) on delete cascade
);
"""


async def apply_schema(conn: asyncpg.Connection) -> None:
    await conn.execute(SCHEMA_SQL)
