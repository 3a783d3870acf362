from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Mapping, Sequence

import httpx
from opentelemetry import trace
from opentelemetry.sdk.trace.export import SpanExporter

from bkagent.core.config import Settings, get_settings
from bkagent.core.log import LogConfig, build_logger
from bkagent.core.telemetry import TelemetryRuntime, setup_agent_telemetry, shutdown_agent_telemetry
from bkagent.jobs.lifecycle import AcceptedJob, AcquiredJob, AssignedJob, FinishedJob
from bkagent.schemas.jobs import Job, SignalReason
from bkagent.schemas.pipeline import ENV_NAMESPACE_PREFIX
from bkagent.services.job_client import JobClient
from bkagent.services.transport import APIError

logger = logging.getLogger(__name__)
_TRACER = trace.get_tracer(__name__)

ExecuteFn = Callable[[Job], Awaitable[tuple[str | int, str]]]
VerifyFn = Callable[[Job, dict[str, str]], Awaitable[bool]]

FAILED_EXIT_STATUS = "-1"
MAX_RETRY_DELAY_SECONDS = 300.0


def retry_delay(exc: APIError, default_seconds: float, *, maximum: float = MAX_RETRY_DELAY_SECONDS) -> float:
    delay = exc.retry_after if exc.retry_after is not None else default_seconds
    return min(delay, maximum)


async def acquire_with_retry(
    client: JobClient,
    job_id: str,
    *,
    max_attempts: int = 1,
    retry_seconds: float = 5.0,
    headers: Mapping[str, str] | None = None,
) -> AcquiredJob:
    assigned = AssignedJob(client, job_id)
    attempt = 1
    while True:
        try:
            return await assigned.acquire(headers=headers)
        except APIError as exc:
            if not exc.is_locked or attempt >= max_attempts:
                raise
            delay = retry_delay(exc, retry_seconds)
            logger.warning(
                "job id=%s is not runnable yet (attempt %s/%s); retry in %.1fs",
                job_id,
                attempt,
                max_attempts,
                delay,
            )
            await asyncio.sleep(delay)
            attempt += 1


async def run_job(
    client: JobClient,
    job_id: str,
    *,
    execute: ExecuteFn,
    verify: VerifyFn | None = None,
    signed_fields: Sequence[str] | None = None,
    env_prefix: str = ENV_NAMESPACE_PREFIX,
    acquire_max_attempts: int = 1,
    acquire_retry_seconds: float = 5.0,
    acquire_headers: Mapping[str, str] | None = None,
    tracer: trace.Tracer | None = None,
) -> FinishedJob:
    tracer = tracer or _TRACER
    with tracer.start_as_current_span("agent.run_job") as span:
        span.set_attribute("buildkite.job.id", job_id)
        acquired = await acquire_with_retry(
            client,
            job_id,
            max_attempts=acquire_max_attempts,
            retry_seconds=acquire_retry_seconds,
            headers=acquire_headers,
        )
        # The env is final only once the job has been accepted.
        accepted = await acquired.accept()
        span.set_attribute("buildkite.job.endpoint", accepted.job.endpoint or client.api.endpoint)

        verified = True
        if verify is not None:
            try:
                fields = signed_fields if signed_fields is not None else _step_signed_fields(accepted.job)
                values = accepted.job.values_for_fields(fields, env_prefix=env_prefix)
                verified = await verify(accepted.job, values)
            except Exception:
                logger.exception("could not verify signature of job id=%s", job_id)
                await _reject(accepted, span)
                raise

        if not verified:
            logger.error("signature verification failed for job id=%s", job_id)
            return await _reject(accepted, span)

        running = await accepted.start()
        try:
            exit_status, signal = await execute(running.job)
        except Exception:
            logger.exception("job execution failed for id=%s", job_id)
            await running.finish(FAILED_EXIT_STATUS, signal_reason=SignalReason.PROCESS_RUN_ERROR)
            span.set_attribute("buildkite.job.exit_status", FAILED_EXIT_STATUS)
            raise

        finished = await running.finish(exit_status, signal=signal)
        span.set_attribute("buildkite.job.exit_status", finished.job.exit_status or "")
        return finished


async def _reject(accepted: AcceptedJob, span: trace.Span) -> FinishedJob:
    running = await accepted.start()
    finished = await running.finish(FAILED_EXIT_STATUS, signal_reason=SignalReason.SIGNATURE_REJECTED)
    span.set_attribute("buildkite.job.exit_status", FAILED_EXIT_STATUS)
    span.set_attribute("buildkite.job.signal_reason", SignalReason.SIGNATURE_REJECTED.value)
    return finished


async def run_agent(
    job_id: str,
    execute: ExecuteFn,
    *,
    verify: VerifyFn | None = None,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    span_exporter: SpanExporter | None = None,
) -> FinishedJob:
    settings = settings or get_settings()
    build_logger(LogConfig.from_settings(settings))
    telemetry_runtime = setup_agent_telemetry(settings, span_exporter=span_exporter)

    try:
        if http_client is not None:
            return await _run_with_client(job_id, execute, verify, settings, http_client, telemetry_runtime)
        async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as owned_client:
            return await _run_with_client(job_id, execute, verify, settings, owned_client, telemetry_runtime)
    finally:
        shutdown_agent_telemetry(telemetry_runtime)


async def _run_with_client(
    job_id: str,
    execute: ExecuteFn,
    verify: VerifyFn | None,
    settings: Settings,
    http_client: httpx.AsyncClient,
    telemetry_runtime: TelemetryRuntime,
) -> FinishedJob:
    telemetry_runtime.instrument_client(http_client)
    client = JobClient.from_settings(settings, client=http_client)
    return await run_job(
        client,
        job_id,
        execute=execute,
        verify=verify,
        env_prefix=settings.signing_env_prefix,
        acquire_max_attempts=settings.acquire_max_attempts,
        acquire_retry_seconds=settings.acquire_retry_seconds,
        tracer=telemetry_runtime.tracer(__name__),
    )


def _step_signed_fields(job: Job) -> list[str]:
    if job.step.signature is None:
        return []
    return list(job.step.signature.signed_fields)
