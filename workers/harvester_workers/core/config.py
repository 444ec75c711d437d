from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "maintenance-worker"
    api_key: str = "local-maintenance-key"
    request_timeout_seconds: float = 30.0
    tick_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    lease_reaper_interval_seconds: float = 30.0
    lease_reaper_batch_size: int = 100
    daily_analytics_hour_utc: int = 1
    refresh_interval_seconds: float = 3600.0
    otel_enabled: bool = True
    otel_service_name: str = "keyword-harvester-maintenance"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="HV_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
