from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "grievance-tracking-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_pool_max_waiting: int = 50
    database_pool_acquire_timeout_seconds: float = 10.0
    database_command_timeout_seconds: float = 15.0
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    rate_limit_capacity: int = 30
    rate_limit_refill_per_second: float = 0.5
    transient_retry_after_seconds: int = 2
    log_level: str = "INFO"
    otel_enabled: bool = True
    otel_service_name: str = "grievance-tracking-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True
    otel_excluded_urls: str = "healthz"

    model_config = SettingsConfigDict(env_prefix="GT_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
