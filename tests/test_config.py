from __future__ import annotations

from bkagent.core.config import Settings
from bkagent.services.job_client import JobClient


def test_settings_read_agent_env_prefix(monkeypatch) -> None:
    monkeypatch.setenv("BUILDKITE_AGENT_ENDPOINT", "https://agent.example.com/v3")
    monkeypatch.setenv("BUILDKITE_AGENT_TOKEN", "agent-token")
    monkeypatch.setenv("BUILDKITE_AGENT_SIGNING_ENV_PREFIX", "x-bk-env:")
    monkeypatch.setenv("BUILDKITE_AGENT_ACQUIRE_MAX_ATTEMPTS", "4")

    settings = Settings()

    assert settings.endpoint == "https://agent.example.com/v3"
    assert settings.token == "agent-token"
    assert settings.signing_env_prefix == "x-bk-env:"
    assert settings.acquire_max_attempts == 4


def test_job_client_from_settings_uses_endpoint_and_token() -> None:
    client = JobClient.from_settings(Settings(endpoint="https://agent.example.com/v3/", token="agent-token"))

    request = client.api.new_request("GET", "jobs/job-1")

    assert str(request.url) == "https://agent.example.com/v3/jobs/job-1"
    assert request.headers["authorization"] == "Token agent-token"
