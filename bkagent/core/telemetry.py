"""Tracing for lifecycle calls.

The tracer provider is owned by :class:`TelemetryRuntime` and handed to the
code that needs it; nothing is installed process-wide. HTTP client spans come
from instrumenting the specific ``httpx.AsyncClient`` the agent talks through.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os

import httpx
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from bkagent.core.config import Settings

logger = logging.getLogger(__name__)

AGENT_ENDPOINT_ATTRIBUTE = "buildkite.agent.endpoint"
USER_AGENT_ATTRIBUTE = "user_agent.original"


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None

    def tracer(self, name: str) -> trace.Tracer:
        return trace.get_tracer(name, tracer_provider=self.provider)

    def instrument_client(self, client: httpx.AsyncClient) -> None:
        if not self.enabled:
            return
        HTTPXClientInstrumentor.instrument_client(client, tracer_provider=self.provider)


def agent_resource(settings: Settings) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            AGENT_ENDPOINT_ATTRIBUTE: settings.endpoint,
            USER_AGENT_ATTRIBUTE: settings.user_agent,
        }
    )


def setup_agent_telemetry(settings: Settings, *, span_exporter: SpanExporter | None = None) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    provider = TracerProvider(
        resource=agent_resource(settings),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = span_exporter if span_exporter is not None else _otlp_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_agent_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def _otlp_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; agent spans for %s are not exported", settings.endpoint)
        return None

    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; items without ``=`` or with an empty key are dropped."""
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}
