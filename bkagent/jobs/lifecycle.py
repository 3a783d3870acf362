"""Typed states for a job moving through acquire, accept, start and finish.

Each state exposes only the transition that is legal from it and returns the
next state on success, so an agent cannot start a job it has not accepted.
The wrapped :class:`~bkagent.schemas.jobs.Job` is the caller's mirror of the
remote job and is updated in place once a transition has succeeded.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Mapping

from bkagent.schemas.jobs import Job, SignalReason
from bkagent.services.job_client import JobClient

logger = logging.getLogger(__name__)


class TransitionError(RuntimeError):
    pass


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _LifecycleState:
    def __init__(self, client: JobClient) -> None:
        self.client = client
        self._completed = False

    def _ensure_pending(self, transition: str) -> None:
        if self._completed:
            raise TransitionError(f"{type(self).__name__}.{transition} already succeeded; use the state it returned")


class AssignedJob(_LifecycleState):
    def __init__(self, client: JobClient, job_id: str) -> None:
        super().__init__(client)
        self.job_id = job_id

    async def acquire(self, *, headers: Mapping[str, str] | None = None) -> AcquiredJob:
        self._ensure_pending("acquire")
        job = await self.client.acquire_job(self.job_id, headers=headers)
        self._completed = True
        logger.info("acquired job id=%s state=%s", job.id, job.state)
        return AcquiredJob(self.client, job)


class AcquiredJob(_LifecycleState):
    def __init__(self, client: JobClient, job: Job) -> None:
        super().__init__(client)
        self.job = job

    async def accept(self) -> AcceptedJob:
        self._ensure_pending("accept")
        accepted = await self.client.accept_job(self.job)
        # Fields the coordinator left out of the response keep their acquired values.
        for name in accepted.model_fields_set:
            setattr(self.job, name, getattr(accepted, name))
        self._completed = True
        logger.info("accepted job id=%s env_vars=%d", self.job.id, len(self.job.env))
        return AcceptedJob(self.client, self.job)


class AcceptedJob(_LifecycleState):
    def __init__(self, client: JobClient, job: Job) -> None:
        super().__init__(client)
        self.job = job

    async def start(self, *, started_at: str | None = None) -> RunningJob:
        self._ensure_pending("start")
        timestamp = started_at or utc_timestamp()
        job_client = self.client.for_job(self.job)
        await job_client.start_job(self.job.model_copy(update={"started_at": timestamp}))
        self.job.started_at = timestamp
        self._completed = True
        logger.info("started job id=%s at=%s", self.job.id, timestamp)
        return RunningJob(job_client, self.job)


class RunningJob(_LifecycleState):
    def __init__(self, client: JobClient, job: Job) -> None:
        super().__init__(client)
        self.job = job

    async def finish(
        self,
        exit_status: str | int,
        *,
        signal: str = "",
        signal_reason: SignalReason | str | None = None,
        chunks_failed_count: int = 0,
        finished_at: str | None = None,
    ) -> FinishedJob:
        self._ensure_pending("finish")
        status = str(exit_status)
        if not status:
            raise ValueError("finishing a job requires an exit status")
        if chunks_failed_count < 0:
            raise ValueError(f"chunks_failed_count must not be negative, got {chunks_failed_count}")

        if isinstance(signal_reason, SignalReason):
            reason = signal_reason.value
        else:
            reason = signal_reason or ""
        update = {
            "exit_status": status,
            "signal": signal,
            "signal_reason": reason,
            "chunks_failed_count": chunks_failed_count,
            "finished_at": finished_at or utc_timestamp(),
        }
        await self.client.finish_job(self.job.model_copy(update=update))
        for name, value in update.items():
            setattr(self.job, name, value)
        self._completed = True
        logger.info(
            "finished job id=%s exit_status=%s signal=%s signal_reason=%s",
            self.job.id,
            status,
            signal or "-",
            reason or "-",
        )
        return FinishedJob(self.job)


class FinishedJob:
    def __init__(self, job: Job) -> None:
        self.job = job
