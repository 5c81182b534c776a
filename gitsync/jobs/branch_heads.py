from __future__ import annotations

import logging
from datetime import datetime, timezone
from urllib.parse import quote

import httpx

from gitsync.services.metrics import SyncMetrics

logger = logging.getLogger(__name__)

THROTTLE_STATUS_CODES = {403, 429}


class BranchHeadError(Exception):
    """Raised when the remote head of a branch cannot be determined."""


class GitHubBranchHeadClient:
    def __init__(
        self,
        *,
        base_url: str = "https://api.github.com",
        token: str | None = None,
        timeout_seconds: float = 10.0,
        metrics: SyncMetrics | None = None,
        metrics_key: str = "repo_sync",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token and token.strip():
            self.headers["Authorization"] = f"Bearer {token.strip()}"
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics
        self.metrics_key = metrics_key
        self._client = client

    async def get_branch_head(self, repository_full_name: str, branch: str) -> str:
        owner, _, name = (repository_full_name or "").strip().partition("/")
        branch = (branch or "").strip()
        if not owner or not name or "/" in name or not branch:
            raise BranchHeadError(f"invalid repository or branch: {repository_full_name!r} {branch!r}")

        url = f"{self.base_url}/repos/{quote(owner, safe='')}/{quote(name, safe='')}/branches/{quote(branch, safe='')}"
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, headers=self.headers)
        except httpx.HTTPError as exc:
            raise BranchHeadError(f"branch head request failed: {exc}") from exc

        self._record_rate_limit(response)

        if response.status_code != 200:
            raise BranchHeadError(
                f"branch head request for {repository_full_name}@{branch} returned {response.status_code}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise BranchHeadError("branch head response is not json") from exc

        commit = payload.get("commit") if isinstance(payload, dict) else None
        sha = commit.get("sha") if isinstance(commit, dict) else None
        if not isinstance(sha, str) or not sha.strip():
            raise BranchHeadError(f"branch head response for {repository_full_name}@{branch} has no sha")
        return sha.strip()

    def _record_rate_limit(self, response: httpx.Response) -> None:
        if self.metrics is None:
            return

        remaining_raw = response.headers.get("X-RateLimit-Remaining")
        if response.status_code in THROTTLE_STATUS_CODES and (
            remaining_raw == "0" or "Retry-After" in response.headers or response.status_code == 429
        ):
            self.metrics.record_throttle(self.metrics_key)
            logger.warning(
                "github api throttled status=%s remaining=%s",
                response.status_code,
                remaining_raw,
            )

        limit = _as_int(response.headers.get("X-RateLimit-Limit"))
        remaining = _as_int(remaining_raw)
        if limit is None or remaining is None:
            return
        reset_epoch = _as_int(response.headers.get("X-RateLimit-Reset"))
        reset_at = datetime.fromtimestamp(reset_epoch, tz=timezone.utc) if reset_epoch else None
        self.metrics.record_quota(self.metrics_key, limit=limit, remaining=remaining, reset_at=reset_at)


def _as_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None
