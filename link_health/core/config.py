from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "link-health-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    probe_timeout_seconds: float = 8.0
    probe_max_redirects: int = 5
    probe_max_body_bytes: int = 2 * 1024 * 1024
    probe_user_agent: str = "Mozilla/5.0 (compatible; URLHealthBot/1.0)"
    probe_accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    job_candidate_limit: int = 1000
    job_progress_flush_every: int = 10
    job_requests_per_second: float = 5.0
    job_request_burst: int = 1
    job_default_include_auto_fix: bool = True
    job_default_confidence_threshold: float = 0.85
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "link-health-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LH_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
