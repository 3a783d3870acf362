from __future__ import annotations

from enum import Enum
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field

from bkagent.jobs.signing import values_for_fields
from bkagent.schemas.pipeline import ENV_NAMESPACE_PREFIX, CommandStep


class JobState(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"
    WAITING_FAILED = "waiting_failed"
    BLOCKED = "blocked"
    BLOCKED_FAILED = "blocked_failed"
    UNBLOCKED = "unblocked"
    UNBLOCKED_FAILED = "unblocked_failed"
    LIMITING = "limiting"
    LIMITED = "limited"
    SCHEDULED = "scheduled"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    RUNNING = "running"
    FINISHED = "finished"
    CANCELING = "canceling"
    CANCELED = "canceled"
    TIMING_OUT = "timing_out"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    BROKEN = "broken"
    EXPIRED = "expired"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> JobState:
        # States added by the coordinator later are not an error.
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


class SignalReason(str, Enum):
    AGENT_REFUSED = "agent_refused"
    AGENT_STOP = "agent_stop"
    CANCEL = "cancel"
    SIGNATURE_REJECTED = "signature_rejected"
    PROCESS_RUN_ERROR = "process_run_error"
    STACK_ERROR = "stack_error"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> SignalReason:
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


class Job(BaseModel):
    """Local mirror of a job as the coordinator last described it."""

    id: str = ""
    endpoint: str = ""
    state: str = ""
    env: dict[str, str] = Field(default_factory=dict)
    step: CommandStep = Field(default_factory=CommandStep)
    chunks_max_size_bytes: int = Field(default=0, ge=0)
    log_max_size_bytes: int = Field(default=0, ge=0)
    token: str = ""
    exit_status: str = ""
    signal: str = ""
    signal_reason: str = ""
    started_at: str = ""
    finished_at: str = ""
    runnable_at: str = ""
    chunks_failed_count: int = Field(default=0, ge=0)

    model_config = ConfigDict(extra="ignore")

    @property
    def state_kind(self) -> JobState:
        return JobState.parse(self.state)

    @property
    def signal_reason_kind(self) -> SignalReason | None:
        if not self.signal_reason:
            return None
        return SignalReason.parse(self.signal_reason)

    def values_for_fields(
        self,
        fields: Sequence[str],
        *,
        env_prefix: str = ENV_NAMESPACE_PREFIX,
    ) -> dict[str, str]:
        return values_for_fields(self, fields, env_prefix=env_prefix)


class JobStateResponse(BaseModel):
    state: str = ""

    @property
    def kind(self) -> JobState:
        return JobState.parse(self.state)


class JobStartRequest(BaseModel):
    started_at: str | None = None


class JobFinishRequest(BaseModel):
    exit_status: str | None = None
    signal: str | None = None
    signal_reason: str | None = None
    finished_at: str | None = None
    chunks_failed_count: int = 0


class OidcTokenRequest(BaseModel):
    audience: str


class OidcToken(BaseModel):
    token: str
