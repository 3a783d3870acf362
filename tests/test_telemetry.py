from __future__ import annotations

import asyncio

import httpx
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind

from bkagent.core.config import Settings
from bkagent.core.telemetry import (
    AGENT_ENDPOINT_ATTRIBUTE,
    USER_AGENT_ATTRIBUTE,
    parse_headers,
    setup_agent_telemetry,
    shutdown_agent_telemetry,
)
from bkagent.main import run_agent, run_job
from bkagent.schemas.jobs import Job
from bkagent.services.job_client import JobClient
from bkagent.services.transport import APIClient

ENDPOINT = "https://agent.example.com/v3"


async def _execute(job: Job) -> tuple[str, str]:
    return "0", ""


def _traced_settings() -> Settings:
    return Settings(
        endpoint=ENDPOINT,
        token="agent-token",
        environment="test",
        user_agent="buildkite-agent-jobs/test",
        otel_enabled=True,
        otel_service_name="agent-under-test",
        log_colors=False,
    )


def test_parse_headers_skips_malformed_items() -> None:
    assert parse_headers("api-key=abc, broken ,x-team = ci") == {"api-key": "abc", "x-team": "ci"}
    assert parse_headers(None) == {}


def test_disabled_telemetry_is_a_no_op() -> None:
    runtime = setup_agent_telemetry(Settings(otel_enabled=False))

    assert runtime.enabled is False
    assert runtime.provider is None
    assert not runtime.tracer("bkagent.test").start_span("noop").get_span_context().is_valid
    shutdown_agent_telemetry(runtime)


def test_run_job_records_job_span_around_lifecycle_calls(coordinator) -> None:
    exporter = InMemorySpanExporter()
    runtime = setup_agent_telemetry(_traced_settings(), span_exporter=exporter)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(coordinator.handler)) as http:
            runtime.instrument_client(http)
            client = JobClient(APIClient(ENDPOINT, "agent-token", client=http))
            await run_job(client, "job-1", execute=_execute, tracer=runtime.tracer("bkagent.test"))

    asyncio.run(run())
    shutdown_agent_telemetry(runtime)

    spans = exporter.get_finished_spans()
    job_span = next(span for span in spans if span.name == "agent.run_job")
    client_spans = [span for span in spans if span.kind is SpanKind.CLIENT]

    assert job_span.attributes["buildkite.job.id"] == "job-1"
    assert job_span.attributes["buildkite.job.endpoint"] == "https://eu.agent.example.com/v3"
    assert job_span.attributes["buildkite.job.exit_status"] == "0"
    assert len(client_spans) == 4
    assert all(span.parent is not None for span in client_spans)
    assert {span.parent.span_id for span in client_spans} == {job_span.context.span_id}
    assert {span.context.trace_id for span in spans} == {job_span.context.trace_id}

    resource = job_span.resource.attributes
    assert resource["service.name"] == "agent-under-test"
    assert resource["deployment.environment"] == "test"
    assert resource[AGENT_ENDPOINT_ATTRIBUTE] == ENDPOINT
    assert resource[USER_AGENT_ATTRIBUTE] == "buildkite-agent-jobs/test"


def test_run_job_span_marks_rejected_signature(coordinator) -> None:
    exporter = InMemorySpanExporter()
    runtime = setup_agent_telemetry(_traced_settings(), span_exporter=exporter)

    async def verify(job: Job, values: dict[str, str]) -> bool:
        return False

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(coordinator.handler)) as http:
            client = JobClient(APIClient(ENDPOINT, "agent-token", client=http))
            await run_job(
                client,
                "job-1",
                execute=_execute,
                verify=verify,
                signed_fields=["command"],
                tracer=runtime.tracer("bkagent.test"),
            )

    asyncio.run(run())
    shutdown_agent_telemetry(runtime)

    (job_span,) = exporter.get_finished_spans()
    assert job_span.attributes["buildkite.job.exit_status"] == "-1"
    assert job_span.attributes["buildkite.job.signal_reason"] == "signature_rejected"


def test_run_agent_runs_job_through_configured_client(coordinator) -> None:
    exporter = InMemorySpanExporter()

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(coordinator.handler)) as http:
            return await run_agent(
                "job-1",
                _execute,
                settings=_traced_settings(),
                http_client=http,
                span_exporter=exporter,
            )

    finished = asyncio.run(run())

    assert finished.job.exit_status == "0"
    assert coordinator.actions() == ["acquire", "accept", "start", "finish"]
    assert coordinator.calls[0].headers["authorization"] == "Token agent-token"
    assert coordinator.calls[0].headers["user-agent"] == "buildkite-agent-jobs/test"
    assert coordinator.calls[-1].headers["authorization"] == "Token job-token"

    spans = exporter.get_finished_spans()
    assert "agent.run_job" in {span.name for span in spans}
    assert sum(span.kind is SpanKind.CLIENT for span in spans) == 4


def test_run_agent_without_telemetry_still_finishes_job(coordinator) -> None:
    settings = Settings(endpoint=ENDPOINT, token="agent-token", log_colors=False)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(coordinator.handler)) as http:
            return await run_agent("job-1", _execute, settings=settings, http_client=http)

    finished = asyncio.run(run())

    assert finished.job.exit_status == "0"
    assert finished.job.finished_at
