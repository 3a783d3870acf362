from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    endpoint: str = "https://agent.buildkite.com/v3"
    token: str = ""
    user_agent: str = "buildkite-agent-jobs/0.1.0"
    request_timeout_seconds: float = 60.0
    signing_env_prefix: str = "env::"
    acquire_max_attempts: int = 1
    acquire_retry_seconds: float = 5.0
    log_level: str = "INFO"
    log_colors: bool = True
    otel_enabled: bool = False
    otel_service_name: str = "buildkite-agent-jobs"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="BUILDKITE_AGENT_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
