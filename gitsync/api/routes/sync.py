import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status

from gitsync.core.config import Settings, get_settings
from gitsync.core.errors import repository_http_error
from gitsync.core.security import get_workspace_id
from gitsync.jobs.drift_poller import DriftPoller
from gitsync.jobs.runner import get_drift_poller
from gitsync.schemas.github import GitHubRepo, GitHubRepoList, ManualSyncResponse
from gitsync.schemas.health import SyncHealthReport
from gitsync.schemas.jobs import EnqueueSyncJob, SyncJob, SyncJobType
from gitsync.services.health import SyncHealthReporter, parse_duration
from gitsync.services.metrics import SyncMetrics, get_sync_metrics
from gitsync.services.repository import (
    DEFAULT_BRANCH,
    RepositoryError,
    get_repository,
    tracked_branches,
)
from gitsync.services.ttl_stores import utc_now

router = APIRouter()
logger = logging.getLogger(__name__)


def parse_fallback_repositories(raw: str | None) -> list[GitHubRepo]:
    """Parse ``owner/repo[:branch]`` entries separated by commas or whitespace."""
    repos: list[GitHubRepo] = []
    seen: set[str] = set()
    for entry in (raw or "").replace(",", " ").split():
        full_name, _, branch = entry.partition(":")
        owner, _, name = full_name.strip().partition("/")
        if not owner or not name or "/" in name:
            continue
        key = f"{owner}/{name}".lower()
        if key in seen:
            continue
        seen.add(key)
        repos.append(GitHubRepo(full_name=f"{owner}/{name}", default_branch=branch.strip() or DEFAULT_BRANCH))
    return repos


@router.get("/sync/health", response_model=SyncHealthReport)
async def sync_health(
    stuck_threshold: str | None = None,
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    metrics: SyncMetrics = Depends(get_sync_metrics),
    poller: DriftPoller = Depends(get_drift_poller),
) -> SyncHealthReport:
    if stuck_threshold is None or not stuck_threshold.strip():
        threshold = timedelta(seconds=settings.stuck_job_threshold_seconds)
    else:
        try:
            threshold = parse_duration(stuck_threshold)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"invalid stuck_threshold: {exc}",
            ) from exc

    reporter = SyncHealthReporter(
        repository=repository,
        metrics=metrics,
        poller_snapshot=lambda: poller.snapshot().as_dict(),
    )
    try:
        return await reporter.report(threshold)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc


@router.post(
    "/projects/{project_id}/github/sync",
    response_model=ManualSyncResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_project_sync(
    project_id: str,
    org_id: str = Depends(get_workspace_id),
    repository=Depends(get_repository),
) -> ManualSyncResponse:
    try:
        binding = await repository.get_binding(org_id=org_id, project_id=project_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    if binding is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="project repository binding not found")
    if not (binding.repository_full_name or "").strip():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="project has no repository configured")

    branches = tracked_branches(binding)
    try:
        job = await repository.enqueue(
            EnqueueSyncJob(
                org_id=org_id,
                project_id=project_id,
                job_type=SyncJobType.REPO_SYNC,
                payload={
                    "reason": "manual",
                    "requested_at": utc_now().isoformat(),
                    "repository_full_name": binding.repository_full_name,
                    "default_branch": branches[0],
                    "branches": branches,
                },
            )
        )
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc

    logger.info("manual repo sync queued project_id=%s job_id=%s branches=%s", project_id, job.id, len(branches))
    return ManualSyncResponse(
        job_id=job.id,
        status=job.status.value,
        project_id=project_id,
        repository_full_name=binding.repository_full_name,
        last_synced_sha=binding.last_synced_sha,
        last_synced_at=binding.last_synced_at,
        conflict_state=binding.conflict_state,
    )


@router.get("/projects/{project_id}/github/sync", response_model=SyncJob)
async def latest_project_sync(
    project_id: str,
    org_id: str = Depends(get_workspace_id),
    repository=Depends(get_repository),
) -> SyncJob:
    try:
        job = await repository.get_latest_by_project_and_type(project_id, SyncJobType.REPO_SYNC, org_id=org_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no repo sync job for project")
    return job


@router.get("/github/repos", response_model=GitHubRepoList)
async def list_github_repos(
    _org_id: str = Depends(get_workspace_id),
    settings: Settings = Depends(get_settings),
) -> GitHubRepoList:
    repos = parse_fallback_repositories(settings.github_repositories)
    return GitHubRepoList(repos=repos, total=len(repos))
