from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import httpx
import pytest

from bkagent.services.job_client import JobClient
from bkagent.services.transport import APIClient

AGENT_ENDPOINT = "https://agent.example.com/v3"
JOB_ENDPOINT = "https://eu.agent.example.com/v3"


class FakeCoordinator:
    """Answers lifecycle calls for a single job and records every request."""

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self.acquire_payload: dict[str, Any] = {
            "id": "job-1",
            "endpoint": JOB_ENDPOINT,
            "state": "assigned",
            "token": "job-token",
            "env": {"BUILDKITE_COMMAND": "make test"},
            "step": {"command": "make test"},
        }
        self.accept_payload: dict[str, Any] = {
            "id": "job-1",
            "state": "accepted",
            "env": {"BUILDKITE_COMMAND": "make test", "BUILDKITE_AGENT_NAME": "agent-1"},
        }
        self.failures: dict[str, list[httpx.Response]] = {}

    def fail_next(self, action: str, response: httpx.Response) -> None:
        self.failures.setdefault(action, []).append(response)

    def actions(self) -> list[str]:
        return [request.url.path.rsplit("/", 1)[-1] for request in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        action = request.url.path.rsplit("/", 1)[-1]
        queued = self.failures.get(action)
        if queued:
            return queued.pop(0)
        if action == "acquire":
            return httpx.Response(200, json=self.acquire_payload, request=request)
        if action == "accept":
            return httpx.Response(200, json=self.accept_payload, request=request)
        if action in {"start", "finish"}:
            return httpx.Response(200, request=request)
        return httpx.Response(404, json={"message": "not found"}, request=request)

    def run(self, action: Callable[[JobClient], Awaitable[Any]]) -> Any:
        async def run() -> Any:
            transport = httpx.MockTransport(self.handler)
            async with httpx.AsyncClient(transport=transport) as http:
                client = JobClient(APIClient(AGENT_ENDPOINT, "agent-token", client=http))
                return await action(client)

        return asyncio.run(run())


@pytest.fixture
def coordinator() -> FakeCoordinator:
    return FakeCoordinator()
