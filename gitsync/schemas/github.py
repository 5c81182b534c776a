from datetime import datetime

from pydantic import BaseModel, Field


class ConnectStartResponse(BaseModel):
    install_url: str
    state: str
    expires_in_seconds: int


class ConnectCallbackResponse(BaseModel):
    connected: bool = True
    org_id: str
    installation_id: int
    account_login: str
    account_type: str


class ManualSyncResponse(BaseModel):
    job_id: str
    status: str
    project_id: str
    repository_full_name: str | None = None
    last_synced_sha: str | None = None
    last_synced_at: datetime | None = None
    conflict_state: str = "none"


class GitHubRepo(BaseModel):
    full_name: str
    default_branch: str = "main"


class GitHubRepoList(BaseModel):
    repos: list[GitHubRepo] = Field(default_factory=list)
    total: int = 0
