"""Shared helpers: a mock runner fleet whose calls finish on demand."""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
import pytest

from runner_pool import AdmissionQueue, Dispatcher, RunnerPool


@dataclass
class RunnerCall:
    runner_url: str
    payload: Any
    gate: asyncio.Event = field(default_factory=asyncio.Event)
    status: int = 200
    body: Optional[dict] = None


class GatedRunners:
    """httpx handler standing in for a set of runners.

    Every completion call blocks until the test finishes it, and the number
    of concurrent calls per runner is tracked to check mutual exclusion.
    """

    def __init__(self, models: Optional[list[str]] = None):
        self.models = models or ["gemma:2b"]
        self.calls: list[RunnerCall] = []
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}
        self.healthy = True

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        runner_url = f"{request.url.scheme}://{request.url.host}:{request.url.port}"
        if request.method == "GET":
            if not self.healthy:
                return httpx.Response(503, json={"error": "loading"})
            return httpx.Response(200, json={"data": [{"id": m} for m in self.models]})

        call = RunnerCall(runner_url=runner_url, payload=json.loads(request.content))
        self.calls.append(call)
        self.active[runner_url] = self.active.get(runner_url, 0) + 1
        self.max_active[runner_url] = max(
            self.max_active.get(runner_url, 0), self.active[runner_url]
        )
        try:
            await call.gate.wait()
        finally:
            self.active[runner_url] -= 1
        body = call.body if call.body is not None else {
            "runner": runner_url,
            "echo": call.payload,
        }
        return httpx.Response(call.status, json=body)

    def finish(self, index: int, status: int = 200, body: Optional[dict] = None) -> None:
        call = self.calls[index]
        call.status = status
        call.body = body
        call.gate.set()

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def runner_urls(count: int) -> list[str]:
    return [f"http://runner{i}:8000" for i in range(count)]


def make_pool(count: int, **kwargs) -> RunnerPool:
    """Pool with every runner already past readiness."""
    pool = RunnerPool(runner_urls(count), "gemma:2b", **kwargs)
    for url in pool.runners:
        pool.restore(url)
    return pool


def make_dispatcher(
    client: httpx.AsyncClient,
    runners: int = 1,
    capacity: int = 1,
    **kwargs,
) -> Dispatcher:
    return Dispatcher(make_pool(runners), AdmissionQueue(capacity), client, **kwargs)


@pytest.fixture
def fleet():
    return GatedRunners()
