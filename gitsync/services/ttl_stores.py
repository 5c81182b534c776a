"""Short-lived in-memory coordination stores.

Both stores are process-local. Durable idempotency comes from the
``source_event_id`` uniqueness of the sync job table; these stores only save a
round trip for replayed deliveries and bind connect callbacks to a workspace.
"""

from __future__ import annotations

import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from gitsync.core.config import get_settings

Clock = Callable[[], datetime]

CONNECT_TOKEN_BYTES = 32


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryDedupStore:
    def __init__(self, ttl: timedelta, clock: Clock = utc_now) -> None:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: dict[str, datetime] = {}

    def mark_if_new(self, delivery_id: str) -> bool:
        """Return True the first time a delivery id is seen within the replay window."""
        delivery_id = (delivery_id or "").strip()
        if not delivery_id:
            return False

        now = self._clock()
        with self._lock:
            self._prune_locked(now)
            if delivery_id in self._seen:
                return False
            self._seen[delivery_id] = now
            return True

    def forget(self, delivery_id: str) -> None:
        """Drop a delivery id so a redelivery of a failed request is processed again."""
        with self._lock:
            self._seen.pop((delivery_id or "").strip(), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def _prune_locked(self, now: datetime) -> None:
        expired = [key for key, seen_at in self._seen.items() if now - seen_at >= self.ttl]
        for key in expired:
            del self._seen[key]


@dataclass(slots=True)
class ConnectState:
    org_id: str
    expires_at: datetime


class ConnectStateStore:
    def __init__(self, ttl: timedelta, clock: Clock = utc_now) -> None:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, ConnectState] = {}

    def create(self, org_id: str) -> tuple[str, datetime]:
        org_id = (org_id or "").strip()
        if not org_id:
            raise ValueError("org_id is required")

        token = secrets.token_urlsafe(CONNECT_TOKEN_BYTES)
        now = self._clock()
        expires_at = now + self.ttl
        with self._lock:
            self._prune_locked(now)
            self._states[token] = ConnectState(org_id=org_id, expires_at=expires_at)
        return token, expires_at

    def consume(self, token: str) -> str | None:
        """Pop the state for ``token``; the entry is gone afterwards even if it had expired."""
        token = (token or "").strip()
        if not token:
            return None

        now = self._clock()
        with self._lock:
            entry = self._states.pop(token, None)
            self._prune_locked(now)
        if entry is None or now >= entry.expires_at:
            return None
        return entry.org_id

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def _prune_locked(self, now: datetime) -> None:
        expired = [key for key, state in self._states.items() if now >= state.expires_at]
        for key in expired:
            del self._states[key]


@lru_cache
def get_delivery_store() -> DeliveryDedupStore:
    settings = get_settings()
    return DeliveryDedupStore(ttl=timedelta(seconds=settings.webhook_replay_window_seconds))


@lru_cache
def get_connect_state_store() -> ConnectStateStore:
    settings = get_settings()
    return ConnectStateStore(ttl=timedelta(seconds=settings.connect_state_ttl_seconds))
