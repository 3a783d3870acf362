from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import math
from typing import TYPE_CHECKING, Any, Mapping

import httpx
from pydantic import BaseModel

from bkagent.core.config import Settings

if TYPE_CHECKING:
    from bkagent.schemas.jobs import Job

logger = logging.getLogger(__name__)

CONFLICT_STATUS_CODES = {409, 422}
LOCKED_STATUS_CODE = 423


@dataclass(slots=True)
class APIResponse:
    status_code: int
    headers: httpx.Headers

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> APIResponse:
        return cls(status_code=response.status_code, headers=response.headers)


class APIError(Exception):
    """A non-2xx answer from the coordinator. Network failures are not wrapped."""

    def __init__(self, method: str, url: str, response: APIResponse, body: str) -> None:
        super().__init__(f"{method} {url}: {response.status_code} {_error_message(body)}".rstrip())
        self.method = method
        self.url = url
        self.response = response
        self.status_code = response.status_code
        self.body = body

    @property
    def is_conflict(self) -> bool:
        return self.status_code in CONFLICT_STATUS_CODES

    @property
    def is_locked(self) -> bool:
        return self.status_code == LOCKED_STATUS_CODE

    @property
    def retry_after(self) -> float | None:
        # Only the delta-seconds form is understood.
        raw = self.response.headers.get("retry-after")
        if raw is None:
            return None
        try:
            seconds = float(raw)
        except ValueError:
            return None
        if not math.isfinite(seconds):
            return None
        return max(0.0, seconds)


class APIClient:
    def __init__(
        self,
        endpoint: str,
        token: str = "",
        *,
        user_agent: str = "buildkite-agent-jobs",
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/") + "/"
        self.token = token
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> APIClient:
        return cls(
            settings.endpoint,
            settings.token,
            user_agent=settings.user_agent,
            timeout_seconds=settings.request_timeout_seconds,
            client=client,
        )

    def for_job(self, job: Job) -> APIClient:
        """Client that talks to the job's own endpoint with the job's token."""
        return APIClient(
            job.endpoint or self.endpoint,
            job.token or self.token,
            user_agent=self.user_agent,
            timeout_seconds=self.timeout_seconds,
            client=self._client,
        )

    def new_request(
        self,
        method: str,
        path: str,
        body: BaseModel | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Request:
        request_headers = {
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }
        if self.token:
            request_headers["Authorization"] = f"Token {self.token}"

        content: bytes | None = None
        if body is not None:
            content = body.model_dump_json(exclude_none=True).encode("utf-8")
            request_headers["Content-Type"] = "application/json"
        if headers:
            request_headers.update(headers)

        url = httpx.URL(self.endpoint).join(path)
        return httpx.Request(method, url, headers=request_headers, content=content)

    async def do_request(
        self,
        request: httpx.Request,
        model: type[BaseModel] | None = None,
    ) -> tuple[Any, APIResponse]:
        if self._client is not None:
            response = await self._client.send(request)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.send(request)

        api_response = APIResponse.from_httpx(response)
        logger.debug("%s %s -> %s", request.method, request.url, response.status_code)
        if not response.is_success:
            raise APIError(request.method, str(request.url), api_response, response.text)
        if model is None:
            return None, api_response
        return model.model_validate_json(response.content), api_response


def _error_message(body: str) -> str:
    try:
        decoded = json.loads(body)
    except ValueError:
        return body.strip()
    if isinstance(decoded, dict) and isinstance(decoded.get("message"), str):
        return decoded["message"]
    return body.strip()
