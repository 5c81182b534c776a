import logging

from fastapi import APIRouter, Depends, Header, Response, status

from gitsync.core.errors import repository_http_error
from gitsync.core.security import get_workspace_id, require_worker_key
from gitsync.schemas.jobs import CompleteRequest, FailureRequest, PickupRequest, SyncFailure, SyncJob
from gitsync.services.repository import DEAD_LETTER_LIST_DEFAULT, RepositoryError, get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/jobs/pickup",
    response_model=SyncJob,
    responses={204: {"description": "no eligible job"}},
    dependencies=[Depends(require_worker_key)],
)
async def pickup_job(
    payload: PickupRequest,
    repository=Depends(get_repository),
    x_org_id: str | None = Header(default=None, alias="X-Org-ID"),
):
    org_id = (x_org_id or "").strip() or None
    try:
        job = await repository.pickup_next(payload.job_type, org_id=org_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc

    if job is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    logger.info("sync job picked id=%s type=%s org_id=%s", job.id, job.job_type.value, job.org_id)
    return job


@router.post("/jobs/{job_id}/complete", response_model=SyncJob, dependencies=[Depends(require_worker_key)])
async def complete_job(job_id: str, payload: CompleteRequest, repository=Depends(get_repository)) -> SyncJob:
    try:
        return await repository.mark_completed(job_id, lease_token=payload.lease_token)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc


@router.post("/jobs/{job_id}/failure", response_model=SyncJob, dependencies=[Depends(require_worker_key)])
async def fail_job(job_id: str, payload: FailureRequest, repository=Depends(get_repository)) -> SyncJob:
    failure = SyncFailure(
        error_class=payload.error_class,
        error_message=payload.error_message,
        retryable=payload.retryable,
    )
    try:
        return await repository.record_failure(job_id, failure, lease_token=payload.lease_token)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc


@router.get("/dead-letters", response_model=list[SyncJob])
async def list_dead_letters(
    limit: int = DEAD_LETTER_LIST_DEFAULT,
    org_id: str = Depends(get_workspace_id),
    repository=Depends(get_repository),
) -> list[SyncJob]:
    try:
        return await repository.list_dead_letters(org_id=org_id, limit=limit)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc


@router.post("/dead-letters/{job_id}/replay", response_model=SyncJob, status_code=status.HTTP_202_ACCEPTED)
async def replay_dead_letter(
    job_id: str,
    org_id: str = Depends(get_workspace_id),
    repository=Depends(get_repository),
) -> SyncJob:
    try:
        job = await repository.replay_dead_letter(job_id, org_id=org_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc

    logger.info("dead-letter job replayed id=%s org_id=%s", job.id, org_id)
    return job
