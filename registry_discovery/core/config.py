from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "registry-discovery-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    queue_max_attempts: int = 3
    queue_retry_base_seconds: int = 30
    queue_retry_max_seconds: int = 3600
    worker_id: str = "local-worker"
    poll_interval_ms: int = 2000
    max_backoff_seconds: float = 15.0
    stale_processing_threshold_ms: int = 600_000
    stale_sweep_interval_seconds: float = 60.0
    stale_sweep_batch_size: int = 100
    stats_refresh_interval_seconds: float = 300.0
    checker_timeout_seconds: float = 60.0
    checker_endpoints_json: str | None = None
    duplicate_confidence_threshold: float = 0.9
    otel_enabled: bool = True
    otel_service_name: str = "registry-discovery"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RD_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
