from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "keyword-harvester-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_default_priority: int = 5
    job_default_max_retries: int = 3
    job_lease_seconds: int = 300
    lease_claim_rounds: int = 3
    lease_candidate_batch_size: int = 10
    rate_limit_scraping_job_per_hour: int = 100
    rate_limit_bulk_assignment_per_hour: int = 1000
    rate_limit_default_per_hour: int = 50
    trend_window_days: int = 7
    category_rollup_days: int = 30
    worker_credentials_json: str | None = None
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "keyword-harvester-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="HV_", extra="ignore")

    def rate_limit_quotas(self) -> dict[str, int]:
        return {
            "scraping_job": self.rate_limit_scraping_job_per_hour,
            "bulk_assignment": self.rate_limit_bulk_assignment_per_hour,
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
