from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from gitsync.schemas.jobs import QueueDepth


class SyncHealthReport(BaseModel):
    queue_depth: list[QueueDepth] = Field(default_factory=list)
    stuck_jobs: int
    stuck_threshold_seconds: int
    metrics: dict[str, Any] = Field(default_factory=dict)
    poller: dict[str, Any] = Field(default_factory=dict)
    generated_at: datetime
