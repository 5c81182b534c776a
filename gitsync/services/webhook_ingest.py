"""GitHub webhook ingestion: verify, deduplicate, route and enqueue.

Steps run in a fixed order and nothing is written before the signature has
been verified:

1. unsupported event types are acknowledged as ignored;
2. a missing signature is rejected (401);
3. a missing delivery id is rejected (400);
4. the body is read with a hard size cap (413 past the cap);
5. the HMAC-SHA256 signature is checked in constant time (401, or 500 when no
   secret is configured);
6. replayed delivery ids are acknowledged as duplicates;
7. the body must be a JSON object (400);
8. the workspace is resolved from the installation id, then from the
   repository binding; unroutable events are acknowledged as ignored;
9. the project bound to the repository is looked up (may be absent);
10. a ``webhook`` job keyed by the delivery id is enqueued;
11. a push to a tracked branch also enqueues a ``repo_sync`` job keyed by
    ``<delivery_id>:repo_sync:<branch>``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from opentelemetry import trace

from gitsync.schemas.jobs import EnqueueSyncJob, SyncJobType
from gitsync.services.repository import RepoBinding, RepositoryError, tracked_branches
from gitsync.services.ttl_stores import Clock, DeliveryDedupStore, utc_now

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

GITHUB_SIGNATURE_HEADER = "X-Hub-Signature-256"
GITHUB_DELIVERY_HEADER = "X-GitHub-Delivery"
GITHUB_EVENT_HEADER = "X-GitHub-Event"
ALLOWED_EVENTS = frozenset({"push", "issues", "issue_comment", "pull_request"})
SIGNATURE_PREFIX = "sha256="
BRANCH_REF_PREFIX = "refs/heads/"

# Lookup order for fields that GitHub spells differently across event shapes;
# the first non-empty value wins.
REPOSITORY_FULL_NAME_PATHS: tuple[tuple[str, ...], ...] = (
    ("repository", "full_name"),
)
REPOSITORY_OWNER_PATHS: tuple[tuple[str, ...], ...] = (
    ("repository", "owner", "login"),
    ("repository", "owner", "name"),
)
REPOSITORY_NAME_PATHS: tuple[tuple[str, ...], ...] = (
    ("repository", "name"),
)
INSTALLATION_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("installation", "id"),
)

BodyReader = Callable[[int], Awaitable[bytes]]


class WebhookRejected(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


@dataclass(slots=True)
class WebhookOutcome:
    body: dict[str, Any]
    webhook_job_id: str | None = None
    repo_sync_job_id: str | None = None


def verify_signature(secret: str, body: bytes, header: str) -> bool:
    if not secret.strip():
        return False
    header = (header or "").strip()
    if not header.startswith(SIGNATURE_PREFIX):
        return False
    provided = header[len(SIGNATURE_PREFIX) :].strip().lower()
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(provided.encode("ascii", "replace"), expected.encode("ascii"))


def first_non_empty(payload: dict[str, Any], paths: Sequence[tuple[str, ...]]) -> Any:
    """Return the first non-empty value found walking ``paths`` in order."""
    for path in paths:
        value: Any = payload
        for key in path:
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(key)
        if isinstance(value, str):
            value = value.strip()
        if value not in (None, "", 0):
            return value
    return None


def extract_repository_full_name(payload: dict[str, Any]) -> str | None:
    full_name = first_non_empty(payload, REPOSITORY_FULL_NAME_PATHS)
    if isinstance(full_name, str):
        return full_name
    owner = first_non_empty(payload, REPOSITORY_OWNER_PATHS)
    name = first_non_empty(payload, REPOSITORY_NAME_PATHS)
    if isinstance(owner, str) and isinstance(name, str):
        return f"{owner}/{name}"
    return None


def extract_installation_id(payload: dict[str, Any]) -> int | None:
    raw = first_non_empty(payload, INSTALLATION_ID_PATHS)
    if isinstance(raw, bool):
        return None
    try:
        installation_id = int(raw)
    except (TypeError, ValueError):
        return None
    return installation_id if installation_id > 0 else None


def extract_push_branch(payload: dict[str, Any]) -> str | None:
    ref = payload.get("ref")
    if not isinstance(ref, str) or not ref.strip().startswith(BRANCH_REF_PREFIX):
        return None
    branch = ref.strip()[len(BRANCH_REF_PREFIX) :].strip()
    return branch or None


class WebhookIngestor:
    def __init__(
        self,
        *,
        repository: Any,
        deliveries: DeliveryDedupStore,
        secret: str | None,
        max_body_bytes: int,
        webhook_max_attempts: int,
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.deliveries = deliveries
        self.secret = (secret or "").strip()
        self.max_body_bytes = max_body_bytes
        self.webhook_max_attempts = webhook_max_attempts
        self._clock = clock

    async def handle(
        self,
        *,
        event_type: str | None,
        signature: str | None,
        delivery_id: str | None,
        read_body: BodyReader,
    ) -> WebhookOutcome:
        event_type = (event_type or "").strip()
        if event_type not in ALLOWED_EVENTS:
            return WebhookOutcome(body={"ok": True, "ignored": True, "reason": "unsupported event"})

        signature = (signature or "").strip()
        if not signature:
            raise WebhookRejected(401, "missing github signature")

        delivery_id = (delivery_id or "").strip()
        if not delivery_id:
            raise WebhookRejected(400, "missing github delivery id")

        body = await read_body(self.max_body_bytes)

        if not self.secret:
            logger.error("github webhook secret not configured; rejecting delivery_id=%s", delivery_id)
            raise WebhookRejected(500, "github webhook secret not configured")
        if not verify_signature(self.secret, body, signature):
            logger.warning("github webhook signature mismatch delivery_id=%s event=%s", delivery_id, event_type)
            raise WebhookRejected(401, "invalid github signature")

        if not self.deliveries.mark_if_new(delivery_id):
            logger.info("github webhook duplicate delivery_id=%s event=%s", delivery_id, event_type)
            return WebhookOutcome(body={"ok": True, "duplicate": True, "delivery_id": delivery_id})

        try:
            return await self._ingest(event_type=event_type, delivery_id=delivery_id, body=body)
        except Exception:
            # Redeliveries of a failed request reuse the same delivery id.
            self.deliveries.forget(delivery_id)
            raise

    async def _ingest(self, *, event_type: str, delivery_id: str, body: bytes) -> WebhookOutcome:
        with tracer.start_as_current_span("webhook.ingest") as span:
            span.set_attribute("github.event", event_type)
            span.set_attribute("github.delivery_id", delivery_id)

            try:
                payload = json.loads(body)
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise WebhookRejected(400, "invalid webhook payload") from exc
            if not isinstance(payload, dict):
                raise WebhookRejected(400, "invalid webhook payload")

            repository_full_name = extract_repository_full_name(payload)
            try:
                org_id, binding = await self._resolve_workspace(payload, repository_full_name)
            except RepositoryError as exc:
                logger.exception("github webhook workspace lookup failed delivery_id=%s", delivery_id)
                raise WebhookRejected(500, "failed to resolve webhook workspace") from exc

            if org_id is None:
                logger.info(
                    "github webhook not mapped delivery_id=%s repository=%s",
                    delivery_id,
                    repository_full_name,
                )
                return WebhookOutcome(
                    body={
                        "ok": True,
                        "ignored": True,
                        "reason": "webhook not mapped to an installation or project",
                    }
                )

            project_id = binding.project_id if binding else None
            try:
                webhook_job = await self.repository.enqueue(
                    EnqueueSyncJob(
                        org_id=org_id,
                        project_id=project_id,
                        job_type=SyncJobType.WEBHOOK,
                        payload={"event": event_type, "delivery_id": delivery_id, "payload": payload},
                        source_event_id=delivery_id,
                        max_attempts=self.webhook_max_attempts,
                    )
                )
            except RepositoryError as exc:
                logger.exception("failed to enqueue webhook job delivery_id=%s", delivery_id)
                raise WebhookRejected(500, "failed to enqueue webhook job") from exc

            repo_sync_job_id: str | None = None
            if event_type == "push" and binding is not None:
                try:
                    repo_sync_job_id = await self._enqueue_push_repo_sync(
                        org_id=org_id,
                        binding=binding,
                        payload=payload,
                        delivery_id=delivery_id,
                        repository_full_name=repository_full_name,
                    )
                except RepositoryError as exc:
                    logger.exception("failed to enqueue repo sync delivery_id=%s", delivery_id)
                    raise WebhookRejected(500, "failed to enqueue repo sync from push event") from exc

            span.set_attribute("gitsync.repo_sync_queued", repo_sync_job_id is not None)
            logger.info(
                "github webhook accepted delivery_id=%s event=%s org_id=%s project_id=%s webhook_job_id=%s repo_sync=%s",
                delivery_id,
                event_type,
                org_id,
                project_id,
                webhook_job.id,
                repo_sync_job_id is not None,
            )
            return WebhookOutcome(
                body={
                    "ok": True,
                    "event": event_type,
                    "delivery_id": delivery_id,
                    "webhook_job_id": webhook_job.id,
                    "repo_sync_queued": repo_sync_job_id is not None,
                    "project_id": project_id,
                },
                webhook_job_id=webhook_job.id,
                repo_sync_job_id=repo_sync_job_id,
            )

    async def _resolve_workspace(
        self,
        payload: dict[str, Any],
        repository_full_name: str | None,
    ) -> tuple[str | None, RepoBinding | None]:
        org_id: str | None = None
        installation_id = extract_installation_id(payload)
        if installation_id is not None:
            org_id = await self.repository.get_installation_org_id(installation_id)

        if not repository_full_name:
            return org_id, None

        binding = await self.repository.find_binding_by_repository(repository_full_name, org_id=org_id)
        if org_id is None and binding is not None:
            org_id = binding.org_id
        return org_id, binding

    async def _enqueue_push_repo_sync(
        self,
        *,
        org_id: str,
        binding: RepoBinding,
        payload: dict[str, Any],
        delivery_id: str,
        repository_full_name: str | None,
    ) -> str | None:
        branch = extract_push_branch(payload)
        if branch is None:
            return None
        if branch not in tracked_branches(binding):
            logger.info(
                "push to untracked branch ignored for repo sync project_id=%s branch=%s",
                binding.project_id,
                branch,
            )
            return None

        received_at: datetime = self._clock()
        job = await self.repository.enqueue(
            EnqueueSyncJob(
                org_id=org_id,
                project_id=binding.project_id,
                job_type=SyncJobType.REPO_SYNC,
                payload={
                    "reason": "push_webhook",
                    "delivery_id": delivery_id,
                    "repository_full_name": repository_full_name or binding.repository_full_name,
                    "branch": branch,
                    "before": payload.get("before"),
                    "after": payload.get("after"),
                    "received_at": received_at.isoformat(),
                },
                source_event_id=f"{delivery_id}:repo_sync:{branch}",
            )
        )
        return job.id
