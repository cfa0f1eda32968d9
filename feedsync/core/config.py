from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    apply_migrations: bool = True
    worker_concurrency: int = 5
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    stale_job_threshold_seconds: int = 300
    fetch_timeout_seconds: float = 30.0
    fetch_max_redirects: int = 5
    fetch_max_bytes: int = 10 * 1024 * 1024
    fetch_user_agent: str = "feedsync/0.1 (+https://github.com/feedsync/feedsync)"
    min_fetch_interval_seconds: int = 60
    default_fetch_interval_seconds: int = 3600
    max_fetch_interval_seconds: int = 7 * 24 * 60 * 60
    failure_base_backoff_seconds: int = 30 * 60
    max_consecutive_failures: int = 10
    jitter_fraction: float = 0.1
    max_jitter_seconds: int = 30 * 60
    redirect_confirmations: int = 3
    origin_requests_per_second: float = 1.0
    otel_enabled: bool = True
    otel_service_name: str = "feedsync-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="FEEDSYNC_", extra="ignore")

    @model_validator(mode="after")
    def _check_stale_threshold(self) -> "Settings":
        # one claim may spend the full timeout on every redirect hop
        if self.stale_job_threshold_seconds <= self.fetch_timeout_seconds * (self.fetch_max_redirects + 1):
            raise ValueError("stale_job_threshold_seconds must exceed fetch_timeout_seconds times the redirect budget")
        if self.min_fetch_interval_seconds > self.max_fetch_interval_seconds:
            raise ValueError("min_fetch_interval_seconds must not exceed max_fetch_interval_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
