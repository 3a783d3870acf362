from __future__ import annotations

from typing import Mapping

import httpx

from bkagent.core.config import Settings
from bkagent.schemas.jobs import (
    Job,
    JobFinishRequest,
    JobStartRequest,
    JobStateResponse,
    OidcToken,
    OidcTokenRequest,
)
from bkagent.services.transport import APIClient, APIResponse


class AudienceTooLongError(ValueError):
    def __init__(self) -> None:
        super().__init__("the API only supports at most one element in the audience")


class JobClient:
    def __init__(self, api: APIClient) -> None:
        self.api = api

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> JobClient:
        return cls(APIClient.from_settings(settings, client=client))

    def for_job(self, job: Job) -> JobClient:
        return JobClient(self.api.for_job(job))

    async def get_job_state(self, job_id: str) -> JobStateResponse:
        request = self.api.new_request("GET", f"jobs/{job_id}")
        state, _ = await self.api.do_request(request, JobStateResponse)
        return state

    async def acquire_job(self, job_id: str, headers: Mapping[str, str] | None = None) -> Job:
        request = self.api.new_request("PUT", f"jobs/{job_id}/acquire", headers=headers)
        job, _ = await self.api.do_request(request, Job)
        return job

    async def accept_job(self, job: Job) -> Job:
        """Accept ``job``; the returned job carries the env with the agent's variables merged in."""
        request = self.api.new_request("PUT", f"jobs/{job.id}/accept")
        accepted, _ = await self.api.do_request(request, Job)
        return accepted

    async def start_job(self, job: Job) -> APIResponse:
        request = self.api.new_request(
            "PUT",
            f"jobs/{job.id}/start",
            JobStartRequest(started_at=job.started_at or None),
        )
        _, response = await self.api.do_request(request)
        return response

    async def finish_job(self, job: Job) -> APIResponse:
        payload = JobFinishRequest(
            finished_at=job.finished_at or None,
            exit_status=job.exit_status or None,
            signal=job.signal or None,
            signal_reason=job.signal_reason or None,
            chunks_failed_count=job.chunks_failed_count,
        )
        request = self.api.new_request("PUT", f"jobs/{job.id}/finish", payload)
        _, response = await self.api.do_request(request)
        return response

    async def oidc_token(self, job_id: str, *audience: str) -> OidcToken:
        if len(audience) > 1:
            raise AudienceTooLongError()

        body = OidcTokenRequest(audience=audience[0]) if audience else None
        request = self.api.new_request("POST", f"jobs/{job_id}/oidc/tokens", body)
        token, _ = await self.api.do_request(request, OidcToken)
        return token
