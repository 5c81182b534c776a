from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "gitsync-api"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    github_webhook_secret: str | None = None
    webhook_max_body_bytes: int = 2 * 1024 * 1024
    webhook_replay_window_seconds: float = 24 * 3600.0
    connect_state_ttl_seconds: float = 600.0
    github_app_install_url: str | None = None
    github_app_slug: str | None = None
    github_repositories: str | None = None
    github_api_base_url: str = "https://api.github.com"
    github_token: str | None = None
    github_request_timeout_seconds: float = 10.0
    job_max_attempts: int = 5
    webhook_job_max_attempts: int = 8
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600
    stuck_job_threshold_seconds: int = 900
    drift_poll_enabled: bool = False
    drift_poll_interval_seconds: float = 3600.0
    drift_poll_branch_timeout_seconds: float = 10.0
    worker_api_key: str | None = None
    workspace_api_key_hashes: dict[str, str] = Field(default_factory=dict)
    otel_enabled: bool = True
    otel_service_name: str = "gitsync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="GITSYNC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
