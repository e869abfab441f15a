"""Dispatcher — admission and dispatch of requests onto the runner pool.

A request either claims an idle runner at submit time or waits in the
admission queue. When a runner finishes a call it is handed the oldest queued
request before any other coroutine can see it idle, so a direct submission
and a queued request never claim the same runner.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from runner_pool.errors import (
    DispatchError,
    DispatcherClosed,
    NoRunnersAvailable,
    RequestTimeout,
    RunnerRejected,
    RunnerUnreachable,
)
from runner_pool.config import RunnerState
from runner_pool.pool import RunnerPool
from runner_pool.queue import AdmissionQueue, PendingRequest
from runner_pool.readiness import probe_health

logger = logging.getLogger(__name__)


@dataclass
class RunnerResponse:
    """Successful response from a runner, passed through untouched."""

    runner_url: str
    status_code: int
    content: bytes
    content_type: Optional[str] = None

    def json(self) -> Any:
        return json.loads(self.content)


class Dispatcher:
    """Assigns requests to runners and manages the backlog.

    All pool and queue mutations happen in synchronous sections between
    awaits, which makes "claim idle runner" and "release + dequeue + re-claim"
    atomic on the event loop. The only suspension point is the runner call.
    """

    def __init__(
        self,
        pool: RunnerPool,
        queue: AdmissionQueue,
        client: httpx.AsyncClient,
        endpoint_path: str = "/v1/completion",
        default_timeout: Optional[float] = None,
        health_path: str = "/v1/models",
        recovery_delay: float = 3.0,
    ):
        self.pool = pool
        self.queue = queue
        self.client = client
        self.endpoint_path = endpoint_path
        self.default_timeout = default_timeout
        self.health_path = health_path
        self.recovery_delay = recovery_delay
        self._tasks: set[asyncio.Task] = set()
        self._recovery: dict[str, asyncio.Task] = {}
        self._closed = False

    # ─── admission ─────────────────────────────────────────────────────

    def submit(self, payload: Any, timeout: Optional[float] = None) -> asyncio.Future:
        """Admit a request and return the future that receives its result.

        Raises QueueFull immediately when no runner is idle and the backlog is
        at capacity. The future resolves to a RunnerResponse or fails with a
        DispatchError.
        """
        if self._closed:
            raise DispatcherClosed("Dispatcher is closed")
        if self.pool.size == 0:
            raise NoRunnersAvailable("No runners left in the pool")

        loop = asyncio.get_running_loop()
        request = PendingRequest(payload=payload, future=loop.create_future())

        runner_url = self.pool.claim_idle()
        if runner_url is not None:
            logger.info(f"Dispatching request {request.request_id} directly to {runner_url}")
            self._start(runner_url, request)
        else:
            self.queue.enqueue(request)
            request.future.add_done_callback(
                lambda _f, r=request: self.queue.remove(r)
            )

        timeout = self.default_timeout if timeout is None else timeout
        if timeout is not None:
            request.deadline = time.monotonic() + timeout
            handle = loop.call_later(timeout, self._expire, request, timeout)
            request.future.add_done_callback(lambda _f: handle.cancel())

        return request.future

    async def call(self, payload: Any, timeout: Optional[float] = None) -> RunnerResponse:
        """Submit a request and wait for its result."""
        return await self.submit(payload, timeout=timeout)

    def activate(self, runner_url: str) -> None:
        """Bring a ready or recovered runner into service.

        The runner picks up queued work at once if there is any.
        """
        self.pool.restore(runner_url)
        recovery = self._recovery.pop(runner_url, None)
        if recovery is not None and recovery is not asyncio.current_task():
            recovery.cancel()
        logger.info(f"Runner {runner_url} is now in service")
        request = self.queue.dequeue()
        if request is not None:
            self.pool.mark_busy(runner_url)
            self._start(runner_url, request)

    def drain(self, runner_url: str) -> None:
        """Take a runner out of the pool once its current call finishes."""
        self.pool.drain(runner_url)
        self._fail_queue_if_pool_empty()

    def _fail_queue_if_pool_empty(self) -> None:
        if self.pool.size:
            return
        for request in self.queue.drain():
            logger.warning(f"Failing request {request.request_id}: no runners left")
            self._fail(request, NoRunnersAvailable("No runners left in the pool"))

    # ─── recovery ──────────────────────────────────────────────────────

    def _schedule_recovery(self, runner_url: str) -> None:
        if runner_url in self._recovery or self._closed:
            return
        self._recovery[runner_url] = asyncio.create_task(self._recover(runner_url))

    async def _recover(self, runner_url: str) -> None:
        """Re-check a parked runner until it lists its model again."""
        while True:
            await asyncio.sleep(self.recovery_delay)
            runner = self.pool.runners.get(runner_url)
            if runner is None or runner.state != RunnerState.UNREACHABLE:
                self._recovery.pop(runner_url, None)
                return
            try:
                models = await probe_health(self.client, runner_url, self.health_path)
            except (httpx.HTTPError, ValueError) as e:
                logger.info(f"Parked runner {runner_url} still unhealthy: {e}")
                continue
            if runner.model_name in models:
                logger.info(f"Parked runner {runner_url} recovered")
                self.activate(runner_url)
                return
            logger.info(f"Parked runner {runner_url} does not list {runner.model_name}")

    def _expire(self, request: PendingRequest, timeout: float) -> None:
        if request.future.done():
            return
        queued = self.queue.remove(request)
        logger.warning(
            f"Request {request.request_id} timed out after {timeout}s "
            f"({'queued' if queued else 'in flight'})"
        )
        request.future.set_exception(RequestTimeout(timeout, queued))

    # ─── dispatch ──────────────────────────────────────────────────────

    def _start(self, runner_url: str, request: PendingRequest) -> None:
        task = asyncio.create_task(self._serve(runner_url, request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve(self, runner_url: str, request: Optional[PendingRequest]) -> None:
        """Run requests on one runner until the queue has nothing for it."""
        while request is not None:
            try:
                response = await self.invoke(runner_url, request.payload)
            except asyncio.CancelledError:
                self._fail(request, DispatcherClosed("Dispatcher closed during call"))
                self.pool.release(runner_url, failed=True, error="cancelled")
                raise
            except Exception as e:
                if isinstance(e, DispatchError):
                    logger.warning(f"Request {request.request_id} failed: {e}")
                else:
                    logger.error(
                        f"Unexpected error serving request {request.request_id} "
                        f"on {runner_url}: {e}",
                        exc_info=True,
                    )
                self._fail(request, e)
                request = self._release(runner_url, failed=True, error=str(e))
            else:
                self._resolve(request, response)
                request = self._release(runner_url)

    def _release(
        self, runner_url: str, failed: bool = False, error: Optional[str] = None
    ) -> Optional[PendingRequest]:
        """Free the runner, or hand it straight to the next queued request."""
        if not self.pool.release(runner_url, failed=failed, error=error):
            runner = self.pool.runners.get(runner_url)
            if runner is None:
                self._fail_queue_if_pool_empty()
            elif runner.state == RunnerState.UNREACHABLE:
                self._schedule_recovery(runner_url)
            return None
        if self._closed:
            return None
        request = self.queue.dequeue()
        if request is not None:
            self.pool.mark_busy(runner_url)
            logger.info(
                f"Handing runner {runner_url} to queued request "
                f"{request.request_id} (waited {request.age:.2f}s, "
                f"{self.queue.depth} still queued)"
            )
        return request

    async def invoke(self, runner_url: str, payload: Any) -> RunnerResponse:
        """POST the payload to a runner.

        dict and list payloads are sent as JSON, anything else as raw content.
        """
        if isinstance(payload, (dict, list)):
            kwargs = {"json": payload}
        else:
            kwargs = {"content": payload}
        try:
            response = await self.client.post(
                f"{runner_url}{self.endpoint_path}", **kwargs
            )
        except httpx.HTTPError as e:
            raise RunnerUnreachable(runner_url, str(e) or type(e).__name__) from e

        content_type = response.headers.get("content-type")
        if not response.is_success:
            raise RunnerRejected(
                runner_url, response.status_code, response.text, content_type
            )
        return RunnerResponse(
            runner_url=runner_url,
            status_code=response.status_code,
            content=response.content,
            content_type=content_type,
        )

    def _resolve(self, request: PendingRequest, response: RunnerResponse) -> None:
        if request.future.done():
            logger.info(f"Discarding result of abandoned request {request.request_id}")
            return
        request.future.set_result(response)

    def _fail(self, request: PendingRequest, error: BaseException) -> None:
        if not request.future.done():
            request.future.set_exception(error)

    # ─── observability / lifecycle ─────────────────────────────────────

    def invariant_holds(self) -> bool:
        """A non-empty queue implies that no runner is idle."""
        return self.queue.depth == 0 or self.pool.idle_count == 0

    def snapshot(self) -> dict:
        return {
            "pool_size": self.pool.size,
            "idle": self.pool.idle_count,
            "busy": self.pool.busy_count,
            "serving": self.pool.serving_count,
            "queue_depth": self.queue.depth,
            "oldest_queued_age": self.queue.oldest_age(),
        }

    @property
    def can_serve(self) -> bool:
        """True while at least one runner is idle or running a call."""
        return self.pool.serving_count > 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        """Reject everything still queued and wait for in-flight calls."""
        self._closed = True
        for request in self.queue.drain():
            self._fail(request, DispatcherClosed("Dispatcher closed"))
        recovery = list(self._recovery.values())
        self._recovery.clear()
        for task in recovery:
            task.cancel()
        if recovery:
            await asyncio.gather(*recovery, return_exceptions=True)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Dispatcher closed")
