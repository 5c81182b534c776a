from __future__ import annotations

import asyncio

import httpx
import pytest

from gitsync.jobs.branch_heads import BranchHeadError, GitHubBranchHeadClient
from gitsync.services.metrics import SyncMetrics


def _client(handler, metrics: SyncMetrics | None = None) -> tuple[GitHubBranchHeadClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return (
        GitHubBranchHeadClient(base_url="https://api.github.test", token="tkn", metrics=metrics, client=http_client),
        http_client,
    )


def _run(handler, repository: str, branch: str, metrics: SyncMetrics | None = None) -> str:
    async def run() -> str:
        client, http_client = _client(handler, metrics)
        async with http_client:
            return await client.get_branch_head(repository, branch)

    return asyncio.run(run())


def test_returns_commit_sha_and_records_quota() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"name": "feature/x", "commit": {"sha": "abc123"}},
            headers={"X-RateLimit-Limit": "5000", "X-RateLimit-Remaining": "4999", "X-RateLimit-Reset": "1714564800"},
            request=request,
        )

    metrics = SyncMetrics()
    sha = _run(handler, "acme/widgets", "feature/x", metrics)

    assert sha == "abc123"
    assert seen[0].url.raw_path == b"/repos/acme/widgets/branches/feature%2Fx"
    assert seen[0].headers["Authorization"] == "Bearer tkn"
    quota = metrics.snapshot()["quota"]["repo_sync"]
    assert quota["limit"] == 5000
    assert quota["remaining"] == 4999


def test_rate_limited_response_counts_throttle_and_raises() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            403,
            json={"message": "API rate limit exceeded"},
            headers={"X-RateLimit-Limit": "5000", "X-RateLimit-Remaining": "0"},
            request=request,
        )

    metrics = SyncMetrics()
    with pytest.raises(BranchHeadError):
        _run(handler, "acme/widgets", "main", metrics)

    assert metrics.snapshot()["jobs"]["repo_sync"]["throttled"] == 1


def test_missing_sha_raises() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"commit": {}}, request=request)

    with pytest.raises(BranchHeadError):
        _run(handler, "acme/widgets", "main")


def test_not_found_raises() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Branch not found"}, request=request)

    with pytest.raises(BranchHeadError):
        _run(handler, "acme/widgets", "gone")


@pytest.mark.parametrize(("repository", "branch"), [("widgets", "main"), ("acme/widgets/extra", "main"), ("acme/widgets", " ")])
def test_invalid_input_raises_without_request(repository: str, branch: str) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(BranchHeadError):
        _run(handler, repository, branch)
