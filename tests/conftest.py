from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import pytest

from gitsync.core.config import get_settings

WORKSPACE_KEYS = {
    "org-1": "org-1-secret",
    "org-2": "org-2-secret",
    "org-7": "org-7-secret",
}


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def workspace_credentials(monkeypatch: pytest.MonkeyPatch):
    hashes = {org_id: hashlib.sha256(key.encode("utf-8")).hexdigest() for org_id, key in WORKSPACE_KEYS.items()}
    monkeypatch.setenv("GITSYNC_WORKSPACE_API_KEY_HASHES", json.dumps(hashes))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def workspace_headers() -> Callable[[str], dict[str, str]]:
    def build(org_id: str) -> dict[str, str]:
        return {"X-Org-ID": org_id, "X-API-Key": WORKSPACE_KEYS[org_id]}

    return build
