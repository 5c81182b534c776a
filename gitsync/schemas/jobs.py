from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SyncJobType(str, Enum):
    WEBHOOK = "webhook"
    REPO_SYNC = "repo_sync"
    ISSUE_IMPORT = "issue_import"


class SyncJobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"


class SyncJob(BaseModel):
    id: str
    org_id: str
    project_id: str | None = None
    job_type: SyncJobType
    status: SyncJobStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    source_event_id: str | None = None
    attempts: int = 0
    max_attempts: int
    next_attempt_at: datetime
    lease_token: str | None = None
    error_class: str | None = None
    error_message: str | None = None
    attempt_history: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class EnqueueSyncJob(BaseModel):
    org_id: str
    job_type: SyncJobType
    payload: dict[str, Any] = Field(default_factory=dict)
    project_id: str | None = None
    source_event_id: str | None = None
    max_attempts: int = 0


class SyncFailure(BaseModel):
    error_class: str = ""
    error_message: str = ""
    retryable: bool
    occurred_at: datetime | None = None


class QueueDepth(BaseModel):
    job_type: SyncJobType
    queued: int = 0
    in_progress: int = 0
    dead_letter: int = 0


class PickupRequest(BaseModel):
    job_type: str


class CompleteRequest(BaseModel):
    lease_token: str = Field(min_length=1)


class FailureRequest(BaseModel):
    lease_token: str = Field(min_length=1)
    error_class: str = ""
    error_message: str = ""
    retryable: bool
