from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pytest

from gitsync.schemas.jobs import EnqueueSyncJob, SyncFailure, SyncJobStatus, SyncJobType
from gitsync.services.metrics import SyncMetrics
from gitsync.services.repository import (
    RepoBinding,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    RetryPolicy,
)
from gitsync.services.store import InMemoryRepository


def _repo(clock, **policy: int) -> InMemoryRepository:
    return InMemoryRepository(retry_policy=RetryPolicy(**policy), metrics=SyncMetrics(), clock=clock)


def _enqueue(repo: InMemoryRepository, *, source_event_id: str | None = None, **overrides):
    payload = {
        "org_id": "org-1",
        "job_type": SyncJobType.REPO_SYNC,
        "project_id": "project-1",
        "source_event_id": source_event_id,
        "payload": {"branch": "main"},
    }
    payload.update(overrides)
    return asyncio.run(repo.enqueue(EnqueueSyncJob(**payload)))


def test_enqueue_is_idempotent_on_source_event_id(clock) -> None:
    repo = _repo(clock)
    first = _enqueue(repo, source_event_id="d1", payload={"n": 1})
    second = _enqueue(repo, source_event_id="d1", payload={"n": 2})

    assert second.id == first.id
    assert second.payload == {"n": 1}
    assert len(repo.jobs) == 1


def test_same_source_event_id_across_types_and_orgs_coexist(clock) -> None:
    repo = _repo(clock)
    _enqueue(repo, source_event_id="d1")
    _enqueue(repo, source_event_id="d1", job_type=SyncJobType.WEBHOOK)
    _enqueue(repo, source_event_id="d1", org_id="org-2")
    _enqueue(repo)
    _enqueue(repo)

    assert len(repo.jobs) == 5


def test_enqueue_applies_default_max_attempts(clock) -> None:
    repo = _repo(clock, default_max_attempts=3)
    job = _enqueue(repo)
    explicit = _enqueue(repo, max_attempts=8)

    assert job.max_attempts == 3
    assert explicit.max_attempts == 8
    assert job.status == SyncJobStatus.QUEUED
    assert job.attempts == 0


def test_pickup_returns_oldest_eligible_job_and_leases_it(clock) -> None:
    repo = _repo(clock)
    first = _enqueue(repo)
    clock.advance(seconds=1)
    _enqueue(repo)
    _enqueue(repo, job_type=SyncJobType.WEBHOOK)

    picked = asyncio.run(repo.pickup_next("repo_sync"))

    assert picked is not None
    assert picked.id == first.id
    assert picked.status == SyncJobStatus.IN_PROGRESS
    assert picked.lease_token
    assert repo.metrics.snapshot()["jobs"]["repo_sync"]["picked"] == 1


def test_pickup_on_empty_queue_returns_none(clock) -> None:
    repo = _repo(clock)
    _enqueue(repo, job_type=SyncJobType.WEBHOOK)

    assert asyncio.run(repo.pickup_next(SyncJobType.ISSUE_IMPORT)) is None


def test_pickup_rejects_unknown_job_type(clock) -> None:
    repo = _repo(clock)

    with pytest.raises(RepositoryValidationError):
        asyncio.run(repo.pickup_next("deploy"))


def test_pickup_normalizes_job_type(clock) -> None:
    repo = _repo(clock)
    _enqueue(repo)

    assert asyncio.run(repo.pickup_next("  REPO_SYNC ")) is not None


def test_pickup_scoped_to_workspace(clock) -> None:
    repo = _repo(clock)
    _enqueue(repo, org_id="org-2")

    assert asyncio.run(repo.pickup_next("repo_sync", org_id="org-1")) is None
    assert asyncio.run(repo.pickup_next("repo_sync", org_id="org-2")) is not None


def test_concurrent_pickups_never_share_a_job(clock) -> None:
    repo = _repo(clock)
    for _ in range(5):
        _enqueue(repo)

    async def pick_all():
        return await asyncio.gather(*(repo.pickup_next("repo_sync") for _ in range(8)))

    picked = asyncio.run(pick_all())
    claimed = [job.id for job in picked if job is not None]

    assert len(claimed) == 5
    assert len(set(claimed)) == 5
    assert picked.count(None) == 3


def test_threaded_pickups_never_share_a_job(clock) -> None:
    repo = _repo(clock)
    for _ in range(10):
        _enqueue(repo)
    barrier = threading.Barrier(12)
    claimed: list[str] = []
    claimed_lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        job = asyncio.run(repo.pickup_next("repo_sync"))
        if job is not None:
            with claimed_lock:
                claimed.append(job.id)

    threads = [threading.Thread(target=worker) for _ in range(12)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(claimed) == 10
    assert len(set(claimed)) == 10


def test_mark_completed_is_terminal(clock) -> None:
    repo = _repo(clock)
    _enqueue(repo)
    picked = asyncio.run(repo.pickup_next("repo_sync"))

    completed = asyncio.run(repo.mark_completed(picked.id, lease_token=picked.lease_token))

    assert completed.status == SyncJobStatus.COMPLETED
    assert completed.completed_at == clock()
    assert completed.lease_token is None
    with pytest.raises(RepositoryConflictError):
        asyncio.run(repo.mark_completed(picked.id, lease_token=picked.lease_token))
    with pytest.raises(RepositoryConflictError):
        asyncio.run(repo.record_failure(picked.id, SyncFailure(retryable=True), lease_token=picked.lease_token))


def test_mark_completed_requires_in_progress_and_known_id(clock) -> None:
    repo = _repo(clock)
    queued = _enqueue(repo)

    with pytest.raises(RepositoryConflictError):
        asyncio.run(repo.mark_completed(queued.id, lease_token="any"))
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repo.mark_completed("missing", lease_token="any"))


def test_stale_lease_token_is_rejected(clock) -> None:
    repo = _repo(clock)
    _enqueue(repo)
    picked = asyncio.run(repo.pickup_next("repo_sync"))

    with pytest.raises(RepositoryConflictError):
        asyncio.run(repo.mark_completed(picked.id, lease_token="someone-else"))
    with pytest.raises(RepositoryConflictError):
        asyncio.run(repo.mark_completed(picked.id, lease_token=""))
    assert repo.jobs[0].status == SyncJobStatus.IN_PROGRESS


def test_only_current_lease_holder_can_finish_job(clock) -> None:
    repo = _repo(clock, base_seconds=30)
    job = _enqueue(repo)
    first = asyncio.run(repo.pickup_next("repo_sync"))
    asyncio.run(repo.record_failure(job.id, SyncFailure(retryable=True), lease_token=first.lease_token))
    clock.advance(seconds=30)
    second = asyncio.run(repo.pickup_next("repo_sync"))

    with pytest.raises(RepositoryConflictError):
        asyncio.run(repo.mark_completed(job.id, lease_token=first.lease_token))
    with pytest.raises(RepositoryConflictError):
        asyncio.run(repo.record_failure(job.id, SyncFailure(retryable=False), lease_token=first.lease_token))
    assert repo.jobs[0].status == SyncJobStatus.IN_PROGRESS

    completed = asyncio.run(repo.mark_completed(job.id, lease_token=second.lease_token))
    assert completed.status == SyncJobStatus.COMPLETED


def test_retryable_failure_requeues_with_backoff_at_back_of_queue(clock) -> None:
    repo = _repo(clock, base_seconds=30, max_seconds=600)
    failing = _enqueue(repo)
    other = _enqueue(repo)
    leased = asyncio.run(repo.pickup_next("repo_sync"))

    failed = asyncio.run(
        repo.record_failure(
            failing.id,
            SyncFailure(error_class="RateLimited", error_message="slow down", retryable=True),
            lease_token=leased.lease_token,
        )
    )

    assert failed.status == SyncJobStatus.QUEUED
    assert failed.attempts == 1
    assert failed.next_attempt_at == clock() + timedelta(seconds=30)
    assert failed.error_class == "RateLimited"
    assert failed.attempt_history[0]["attempt"] == 1
    assert asyncio.run(repo.pickup_next("repo_sync")).id == other.id
    assert asyncio.run(repo.pickup_next("repo_sync")) is None

    clock.advance(seconds=30)
    assert asyncio.run(repo.pickup_next("repo_sync")).id == failing.id


def test_backoff_doubles_and_is_capped() -> None:
    policy = RetryPolicy(base_seconds=30, max_seconds=100)

    assert policy.delay_for(1) == timedelta(seconds=30)
    assert policy.delay_for(2) == timedelta(seconds=60)
    assert policy.delay_for(3) == timedelta(seconds=100)
    assert RetryPolicy(base_seconds=0).delay_for(4) == timedelta(0)


def test_exhausting_attempts_dead_letters(clock) -> None:
    repo = _repo(clock, base_seconds=0)
    job = _enqueue(repo, max_attempts=2)

    leased = asyncio.run(repo.pickup_next("repo_sync"))
    first = asyncio.run(repo.record_failure(job.id, SyncFailure(retryable=True), lease_token=leased.lease_token))
    leased = asyncio.run(repo.pickup_next("repo_sync"))
    second = asyncio.run(
        repo.record_failure(job.id, SyncFailure(error_message="boom", retryable=True), lease_token=leased.lease_token)
    )

    assert first.status == SyncJobStatus.QUEUED
    assert second.status == SyncJobStatus.DEAD_LETTER
    assert second.attempts == 2
    assert len(second.attempt_history) == 2
    assert repo.metrics.snapshot()["jobs"]["repo_sync"]["dead_lettered"] == 1
    assert repo.metrics.snapshot()["jobs"]["repo_sync"]["retried"] == 1


def test_non_retryable_failure_dead_letters_immediately(clock) -> None:
    repo = _repo(clock)
    job = _enqueue(repo, max_attempts=5)
    leased = asyncio.run(repo.pickup_next("repo_sync"))

    failed = asyncio.run(
        repo.record_failure(job.id, SyncFailure(error_class="BadPayload", retryable=False), lease_token=leased.lease_token)
    )

    assert failed.status == SyncJobStatus.DEAD_LETTER
    assert failed.attempts == 1


def test_queue_depth_and_stuck_jobs(clock) -> None:
    repo = _repo(clock)
    _enqueue(repo)
    _enqueue(repo)
    _enqueue(repo, job_type=SyncJobType.WEBHOOK)
    _enqueue(repo, org_id="org-2")
    asyncio.run(repo.pickup_next("repo_sync", org_id="org-1"))

    depth = asyncio.run(repo.queue_depth(org_id="org-1"))
    by_type = {row.job_type: row for row in depth}

    assert by_type[SyncJobType.REPO_SYNC].queued == 1
    assert by_type[SyncJobType.REPO_SYNC].in_progress == 1
    assert by_type[SyncJobType.WEBHOOK].queued == 1
    assert asyncio.run(repo.count_stuck_jobs(timedelta(minutes=15))) == 0

    clock.advance(minutes=16)
    assert asyncio.run(repo.count_stuck_jobs(timedelta(minutes=15))) == 1
    assert asyncio.run(repo.count_stuck_jobs(timedelta(minutes=15), org_id="org-2")) == 0
    assert asyncio.run(repo.count_stuck_jobs(timedelta(0))) == 1


def test_latest_by_project_and_type(clock) -> None:
    repo = _repo(clock)
    _enqueue(repo)
    clock.advance(seconds=1)
    latest = _enqueue(repo)
    _enqueue(repo, job_type=SyncJobType.WEBHOOK)

    found = asyncio.run(repo.get_latest_by_project_and_type("project-1", "repo_sync"))

    assert found.id == latest.id
    assert asyncio.run(repo.get_latest_by_project_and_type("project-2", "repo_sync")) is None


def test_dead_letters_can_be_listed_and_replayed(clock) -> None:
    repo = _repo(clock)
    job = _enqueue(repo)
    leased = asyncio.run(repo.pickup_next("repo_sync"))
    asyncio.run(repo.record_failure(job.id, SyncFailure(error_class="Fatal", retryable=False), lease_token=leased.lease_token))

    dead = asyncio.run(repo.list_dead_letters(org_id="org-1"))
    assert [row.id for row in dead] == [job.id]
    assert asyncio.run(repo.list_dead_letters(org_id="org-2")) == []

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repo.replay_dead_letter(job.id, org_id="org-2"))

    replayed = asyncio.run(repo.replay_dead_letter(job.id, org_id="org-1"))
    assert replayed.status == SyncJobStatus.QUEUED
    assert replayed.attempts == 0
    assert replayed.attempt_history == []
    assert replayed.error_class is None

    with pytest.raises(RepositoryConflictError):
        asyncio.run(repo.replay_dead_letter(job.id, org_id="org-1"))


def test_bindings_are_returned_as_copies(clock) -> None:
    repo = _repo(clock)
    repo.add_binding(
        RepoBinding(org_id="org-1", project_id="project-1", repository_full_name="acme/widgets", active_branches=["dev"])
    )

    fetched = asyncio.run(repo.get_binding(org_id="org-1", project_id="project-1"))
    fetched.last_synced_sha = "f" * 40
    fetched.active_branches.append("hotfix")
    found = asyncio.run(repo.find_binding_by_repository("ACME/widgets"))

    assert found.last_synced_sha is None
    assert found.active_branches == ["dev"]

    updated = repo.update_binding(org_id="org-1", project_id="project-1", last_synced_sha="e" * 40)
    [polled] = asyncio.run(repo.list_bindings_for_polling())

    assert updated.last_synced_sha == "e" * 40
    assert polled.last_synced_sha == "e" * 40
    assert polled.active_branches == ["dev"]
    with pytest.raises(RepositoryNotFoundError):
        repo.update_binding(org_id="org-1", project_id="missing", enabled=True)


def test_pending_repo_sync_matches_push_and_poll_heads(clock) -> None:
    repo = _repo(clock)
    _enqueue(repo, payload={"branch": "main", "after": "b" * 40})
    _enqueue(repo, payload={"branch": "release", "detected_head_sha": "c" * 40})
    _enqueue(repo, job_type=SyncJobType.WEBHOOK, payload={"branch": "dev", "after": "d" * 40})

    def pending(branch: str, head_sha: str):
        return asyncio.run(
            repo.find_pending_repo_sync(org_id="org-1", project_id="project-1", branch=branch, head_sha=head_sha)
        )

    assert pending("main", "b" * 40) is not None
    assert pending("release", "c" * 40) is not None
    assert pending("main", "c" * 40) is None
    assert pending("dev", "d" * 40) is None

    leased = asyncio.run(repo.pickup_next("repo_sync"))
    assert pending("main", "b" * 40) is not None
    asyncio.run(repo.mark_completed(leased.id, lease_token=leased.lease_token))
    assert pending("main", "b" * 40) is None
