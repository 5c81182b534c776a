from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from gitsync.core.config import get_settings
from gitsync.jobs.drift_poller import DriftPoller
from gitsync.jobs.runner import get_drift_poller
from gitsync.main import app
from gitsync.schemas.jobs import EnqueueSyncJob, SyncJobType
from gitsync.services.health import SyncHealthReporter, parse_duration
from gitsync.services.metrics import SyncMetrics, get_sync_metrics
from gitsync.services.repository import get_repository
from gitsync.services.store import InMemoryRepository


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("15m", timedelta(minutes=15)),
        ("90s", timedelta(seconds=90)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("2h", timedelta(hours=2)),
        ("500ms", timedelta(milliseconds=500)),
        ("1.5h", timedelta(minutes=90)),
    ],
)
def test_parse_duration_accepts_go_style_values(raw: str, expected: timedelta) -> None:
    assert parse_duration(raw) == expected


@pytest.mark.parametrize("raw", ["", "0s", "-5m", "15", "abc", "15m junk", "m15"])
def test_parse_duration_rejects_invalid_values(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_duration(raw)


def _seeded_repository(clock) -> InMemoryRepository:
    repo = InMemoryRepository(metrics=SyncMetrics(), clock=clock)
    for _ in range(3):
        asyncio.run(repo.enqueue(EnqueueSyncJob(org_id="org-1", job_type=SyncJobType.REPO_SYNC)))
    asyncio.run(repo.enqueue(EnqueueSyncJob(org_id="org-1", job_type=SyncJobType.WEBHOOK)))
    asyncio.run(repo.pickup_next("repo_sync"))
    return repo


def test_reporter_aggregates_without_mutation(clock) -> None:
    repo = _seeded_repository(clock)
    before = repo.jobs
    clock.advance(minutes=20)
    reporter = SyncHealthReporter(
        repository=repo,
        metrics=repo.metrics,
        poller_snapshot=lambda: {"jobs_enqueued": 2},
        clock=clock,
    )

    report = asyncio.run(reporter.report(timedelta(minutes=15)))

    assert report.stuck_jobs == 1
    assert report.stuck_threshold_seconds == 900
    assert {row.job_type: row.queued for row in report.queue_depth} == {
        SyncJobType.REPO_SYNC: 2,
        SyncJobType.WEBHOOK: 1,
    }
    assert report.metrics["jobs"]["repo_sync"]["picked"] == 1
    assert report.poller == {"jobs_enqueued": 2}
    assert report.generated_at == clock()
    assert repo.jobs == before


@pytest.fixture
def health_client(clock) -> TestClient:
    get_settings.cache_clear()
    repo = _seeded_repository(clock)
    poller = DriftPoller(bindings=repo, sync_jobs=repo, branch_heads=None, clock=clock)
    app.dependency_overrides[get_repository] = lambda: repo
    app.dependency_overrides[get_sync_metrics] = lambda: repo.metrics
    app.dependency_overrides[get_drift_poller] = lambda: poller

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    get_settings.cache_clear()


def test_health_endpoint_reports_queue_and_poller(health_client: TestClient) -> None:
    response = health_client.get("/sync/health", params={"stuck_threshold": "1h30m"})

    assert response.status_code == 200
    body = response.json()
    assert body["stuck_threshold_seconds"] == 5400
    assert body["stuck_jobs"] == 0
    assert body["poller"]["last_run_at"] is None
    assert "generated_at" in body


def test_health_endpoint_defaults_threshold(health_client: TestClient) -> None:
    response = health_client.get("/sync/health")

    assert response.status_code == 200
    assert response.json()["stuck_threshold_seconds"] == 900


def test_health_endpoint_rejects_bad_threshold(health_client: TestClient) -> None:
    response = health_client.get("/sync/health", params={"stuck_threshold": "-1m"})

    assert response.status_code == 400
