#!/usr/bin/env python3
"""Emit deterministic SQL for the gitsync schema and optional project bindings."""

from __future__ import annotations

import argparse

from gitsync.services.schema import SCHEMA_SQL


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def parse_binding(raw: str) -> tuple[str, str, str, str]:
    """Parse ``org_id:project_id:owner/repo[:branch]``."""
    parts = raw.split(":")
    if len(parts) not in (3, 4) or not all(part.strip() for part in parts[:3]):
        raise argparse.ArgumentTypeError(f"expected org_id:project_id:owner/repo[:branch], got {raw!r}")
    org_id, project_id, repository = (part.strip() for part in parts[:3])
    owner, _, name = repository.partition("/")
    if not owner or not name or "/" in name:
        raise argparse.ArgumentTypeError(f"repository must be owner/repo, got {repository!r}")
    branch = parts[3].strip() if len(parts) == 4 and parts[3].strip() else "main"
    return org_id, project_id, repository, branch


def render_sql(*, bindings: list[tuple[str, str, str, str]], include_schema: bool = True) -> str:
    chunks: list[str] = ["-- gitsync schema"]
    if include_schema:
        chunks.append(SCHEMA_SQL.strip())

    for org_id, project_id, repository, branch in bindings:
        chunks.append(
            f"""insert into project_repo_bindings (org_id, project_id, repository_full_name, default_branch, enabled)
values ({_quote_sql(org_id)}, {_quote_sql(project_id)}, {_quote_sql(repository)}, {_quote_sql(branch)}, true)
on conflict (org_id, project_id) do update
set repository_full_name = excluded.repository_full_name,
    default_branch = excluded.default_branch,
    enabled = true,
    updated_at = now();"""
        )
    return "\n\n".join(chunks) + "\n"


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL for the gitsync Postgres schema.")
    parser.add_argument(
        "--bind",
        action="append",
        default=[],
        type=parse_binding,
        metavar="ORG:PROJECT:OWNER/REPO[:BRANCH]",
        help="Upsert an enabled project repository binding (repeatable)",
    )
    parser.add_argument(
        "--bindings-only",
        action="store_true",
        help="Skip the DDL and emit only binding upserts",
    )
    args = parser.parse_args()

    print(render_sql(bindings=args.bind, include_schema=not args.bindings_only), end="")


if __name__ == "__main__":
    main()
