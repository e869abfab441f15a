"""HTTP gateway — FastAPI front end for the runner pool.

Routes:
    POST /ask      — send {"prompt": ...} to one runner, pass its body through
    GET  /health   — pool and queue counts; 503 "degraded" when no runner can serve
    GET  /runners  — per-runner state and counters

The app owns one Dispatcher (on app.state) and one shared httpx client.
Runners are probed for readiness in the lifespan, before any traffic.
"""

import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from runner_pool.config import Settings
from runner_pool.dispatcher import Dispatcher
from runner_pool.errors import (
    DispatchError,
    DispatcherClosed,
    NoRunnersAvailable,
    QueueFull,
    RateLimitExceeded,
    ReadinessTimeout,
    RequestTimeout,
    RunnerRejected,
    RunnerUnreachable,
)
from runner_pool.pool import RunnerPool
from runner_pool.queue import AdmissionQueue
from runner_pool.ratelimit import FixedWindowRateLimiter
from runner_pool.readiness import wait_all_ready

logger = logging.getLogger(__name__)


class AskRequest(BaseModel):
    prompt: str = Field(min_length=1)


# ─────────────────────────────────────────────────────────────────────
# Error envelope
# ─────────────────────────────────────────────────────────────────────


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: Optional[dict[str, Any]] = None
    headers: Optional[dict[str, str]] = None


def error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


def api_error_from_dispatch(exc: DispatchError) -> APIError:
    """Map a request-scoped scheduler failure to an HTTP error."""
    if isinstance(exc, QueueFull):
        return APIError(
            503, "server_busy", str(exc),
            details={"max_queue_size": exc.max_size},
            headers={"Retry-After": "1"},
        )
    if isinstance(exc, RunnerRejected):
        return APIError(
            502, "runner_rejected", str(exc),
            details={
                "runner": exc.runner_url,
                "status": exc.status_code,
                "body": exc.body,
            },
        )
    if isinstance(exc, RunnerUnreachable):
        return APIError(502, "runner_unreachable", str(exc), details={"runner": exc.runner_url})
    if isinstance(exc, RequestTimeout):
        return APIError(504, "timeout", str(exc), details={"queued": exc.queued})
    if isinstance(exc, NoRunnersAvailable):
        return APIError(503, "no_runners", str(exc))
    if isinstance(exc, DispatcherClosed):
        return APIError(503, "unavailable", str(exc))
    return APIError(502, "runner_error", str(exc))


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=exc.headers,
    )


async def rate_limit_handler(_req: Request, exc: RateLimitExceeded) -> JSONResponse:
    return error_response(
        status_code=429,
        code="rate_limited",
        message=str(exc),
        details={"limit": exc.limit, "window_seconds": exc.window_seconds},
        headers={"Retry-After": str(max(1, math.ceil(exc.retry_in)))},
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Prompt is required",
        details={"errors": exc.errors()},
    )


# ─────────────────────────────────────────────────────────────────────
# Dependencies
# ─────────────────────────────────────────────────────────────────────


async def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


async def client_key(request: Request) -> str:
    """Identity used for rate limiting: X-Client-Id, else the peer address."""
    header = request.headers.get("x-client-id")
    if header:
        return header
    if request.client is not None:
        return request.client.host
    return "anonymous"


async def check_rate_limit(request: Request, key: str = Depends(client_key)) -> str:
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    limiter.hit(key)
    return key


# ─────────────────────────────────────────────────────────────────────
# App factory
# ─────────────────────────────────────────────────────────────────────


def build_dispatcher(settings: Settings, client: httpx.AsyncClient) -> Dispatcher:
    pool = RunnerPool(
        settings.runner_urls,
        settings.model_name,
        selection=settings.selection,
        failure_threshold=settings.failure_threshold,
    )
    queue = AdmissionQueue(settings.max_queue_size)
    return Dispatcher(
        pool,
        queue,
        client,
        endpoint_path=settings.completion_path,
        default_timeout=settings.request_timeout,
        health_path=settings.health_path,
        recovery_delay=settings.ready_delay,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    wait_for_runners: bool = True,
) -> FastAPI:
    """Build the gateway app.

    The dispatcher is created eagerly and stored on app.state, so tests can
    drive it without running the lifespan. With wait_for_runners, the lifespan
    blocks until every runner passes readiness; ReadinessTimeout aborts
    startup.
    """
    settings = settings or Settings()
    # No client-side timeout on runner calls; deadlines are per request.
    client = client or httpx.AsyncClient(timeout=None)
    dispatcher = build_dispatcher(settings, client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if wait_for_runners:
            try:
                await wait_all_ready(
                    client,
                    dispatcher.pool,
                    retries=settings.ready_retries,
                    delay=settings.ready_delay,
                    health_path=settings.health_path,
                )
            except ReadinessTimeout as e:
                logger.error(f"Startup aborted: {e}")
                await client.aclose()
                raise
        logger.info(
            f"Gateway serving {dispatcher.pool.size} runners "
            f"(queue capacity {settings.max_queue_size})"
        )
        try:
            yield
        finally:
            await dispatcher.close()
            await client.aclose()

    app = FastAPI(title="runner-pool gateway", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.rate_limiter = FixedWindowRateLimiter(
        limit=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window,
    )

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    @app.get("/health")
    async def health(dispatcher: Dispatcher = Depends(get_dispatcher)) -> JSONResponse:
        # Degraded while every runner is parked or drained.
        if dispatcher.can_serve:
            return JSONResponse({"status": "ok", **dispatcher.snapshot()})
        return JSONResponse(
            {"status": "degraded", **dispatcher.snapshot()}, status_code=503
        )

    @app.get("/runners")
    async def runners(dispatcher: Dispatcher = Depends(get_dispatcher)) -> list[dict]:
        return dispatcher.pool.snapshot()

    @app.post("/ask")
    async def ask(
        body: AskRequest,
        dispatcher: Dispatcher = Depends(get_dispatcher),
        key: str = Depends(check_rate_limit),
    ) -> Response:
        logger.debug(f"/ask from {key}")
        payload = {"model": settings.model_name, "prompt": body.prompt}
        try:
            result = await dispatcher.call(payload)
        except DispatchError as e:
            raise api_error_from_dispatch(e) from e
        return Response(
            content=result.content,
            status_code=result.status_code,
            media_type=result.content_type or "application/json",
        )

    return app
