"""Tests for the HTTP gateway — /ask, /health, error envelope, startup."""

import asyncio
import threading

import pytest
from httpx import ASGITransport, AsyncClient

from runner_pool import ReadinessTimeout, Settings
from runner_pool.gateway import create_app

from conftest import GatedRunners, runner_urls, wait_until


def make_app(fleet: GatedRunners, runners: int = 1, **overrides):
    params = {"ready_retries": 1, "ready_delay": 0, **overrides}
    settings = Settings(runner_urls=runner_urls(runners), **params)
    app = create_app(settings, client=fleet.client(), wait_for_runners=False)
    # Lifespan does not run under ASGITransport; bring runners up by hand.
    for url in settings.runner_urls:
        app.state.dispatcher.activate(url)
    return app


def gateway_client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# ─────────────────────────────────────────────────────────────────────
# /health
# ─────────────────────────────────────────────────────────────────────


class TestHealth:
    @pytest.mark.asyncio
    async def test_reports_pool_and_queue(self, fleet):
        app = make_app(fleet, runners=2)
        async with gateway_client(app) as client:
            resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["pool_size"] == 2
        assert body["idle"] == 2
        assert body["busy"] == 0
        assert body["queue_depth"] == 0

    @pytest.mark.asyncio
    async def test_runners_listing(self, fleet):
        app = make_app(fleet, runners=2)
        async with gateway_client(app) as client:
            resp = await client.get("/runners")
        assert [r["url"] for r in resp.json()] == runner_urls(2)
        assert {r["state"] for r in resp.json()} == {"idle"}

    @pytest.mark.asyncio
    async def test_degraded_while_runner_parked(self, fleet):
        app = make_app(fleet, failure_threshold=1, ready_delay=0.01)
        dispatcher = app.state.dispatcher
        async with gateway_client(app) as client:
            pending = asyncio.create_task(client.post("/ask", json={"prompt": "x"}))
            await wait_until(lambda: len(fleet.calls) == 1)
            fleet.healthy = False
            fleet.finish(0, status=503)
            assert (await pending).status_code == 502

            resp = await client.get("/health")
            assert resp.status_code == 503
            assert resp.json()["status"] == "degraded"
            assert resp.json()["serving"] == 0

            fleet.healthy = True
            await wait_until(lambda: dispatcher.can_serve)
            resp = await client.get("/health")
            assert resp.status_code == 200
            assert resp.json()["status"] == "ok"
        await dispatcher.close()


# ─────────────────────────────────────────────────────────────────────
# /ask
# ─────────────────────────────────────────────────────────────────────


class TestAsk:
    @pytest.mark.asyncio
    async def test_passes_runner_body_through(self, fleet):
        app = make_app(fleet)
        async with gateway_client(app) as client:
            pending = asyncio.create_task(client.post("/ask", json={"prompt": "hello"}))
            await wait_until(lambda: len(fleet.calls) == 1)
            assert fleet.calls[0].payload == {"model": "gemma:2b", "prompt": "hello"}

            fleet.finish(0, body={"response": "hi there"})
            resp = await pending
        assert resp.status_code == 200
        assert resp.json() == {"response": "hi there"}

    @pytest.mark.asyncio
    async def test_missing_prompt_is_400(self, fleet):
        app = make_app(fleet)
        async with gateway_client(app) as client:
            resp = await client.post("/ask", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_argument"
        assert fleet.calls == []

    @pytest.mark.asyncio
    async def test_runner_error_is_502_with_details(self, fleet):
        app = make_app(fleet)
        async with gateway_client(app) as client:
            pending = asyncio.create_task(client.post("/ask", json={"prompt": "x"}))
            await wait_until(lambda: len(fleet.calls) == 1)
            fleet.finish(0, status=500, body={"error": "oom"})
            resp = await pending
        assert resp.status_code == 502
        error = resp.json()["error"]
        assert error["code"] == "runner_rejected"
        assert error["details"]["status"] == 500
        assert "oom" in error["details"]["body"]
        assert app.state.dispatcher.pool.idle_count == 1

    @pytest.mark.asyncio
    async def test_full_backlog_is_503(self, fleet):
        app = make_app(fleet, max_queue_size=0)
        async with gateway_client(app) as client:
            first = asyncio.create_task(client.post("/ask", json={"prompt": "a"}))
            await wait_until(lambda: len(fleet.calls) == 1)

            resp = await client.post("/ask", json={"prompt": "b"})
            assert resp.status_code == 503
            assert resp.json()["error"]["code"] == "server_busy"
            assert resp.headers["retry-after"] == "1"

            fleet.finish(0)
            assert (await first).status_code == 200

    @pytest.mark.asyncio
    async def test_rate_limit_is_429(self, fleet):
        app = make_app(fleet, rate_limit_requests=1, rate_limit_window=60)
        async with gateway_client(app) as client:
            first = asyncio.create_task(
                client.post("/ask", json={"prompt": "a"}, headers={"X-Client-Id": "alice"})
            )
            await wait_until(lambda: len(fleet.calls) == 1)

            resp = await client.post(
                "/ask", json={"prompt": "b"}, headers={"X-Client-Id": "alice"}
            )
            assert resp.status_code == 429
            assert resp.json()["error"]["code"] == "rate_limited"
            assert int(resp.headers["retry-after"]) >= 1

            fleet.finish(0)
            await first
        assert len(fleet.calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_runs_on_event_loop_thread(self, fleet):
        app = make_app(fleet, rate_limit_requests=5)
        limiter = app.state.rate_limiter
        threads = []
        hit = limiter.hit

        def recording_hit(key):
            threads.append(threading.current_thread())
            return hit(key)

        limiter.hit = recording_hit
        async with gateway_client(app) as client:
            resp = await client.get("/health")
            assert resp.status_code == 200
            pending = [
                asyncio.create_task(client.post("/ask", json={"prompt": p}))
                for p in ("a", "b")
            ]
            await wait_until(lambda: len(fleet.calls) == 1)
            fleet.finish(0)
            await wait_until(lambda: len(fleet.calls) == 2)
            fleet.finish(1)
            await asyncio.gather(*pending)
        assert threads == [threading.current_thread()] * 2

    @pytest.mark.asyncio
    async def test_no_runners_left_is_503(self, fleet):
        app = make_app(fleet)
        app.state.dispatcher.drain("http://runner0:8000")
        async with gateway_client(app) as client:
            resp = await client.post("/ask", json={"prompt": "x"})
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "no_runners"
        assert fleet.calls == []


# ─────────────────────────────────────────────────────────────────────
# Startup
# ─────────────────────────────────────────────────────────────────────


class TestStartup:
    @pytest.mark.asyncio
    async def test_lifespan_waits_for_runners(self, fleet):
        settings = Settings(runner_urls=runner_urls(2), ready_retries=1, ready_delay=0)
        app = create_app(settings, client=fleet.client())
        pool = app.state.dispatcher.pool
        assert pool.idle_count == 0

        async with app.router.lifespan_context(app):
            assert pool.idle_count == 2

    @pytest.mark.asyncio
    async def test_unready_runner_aborts_startup(self):
        fleet = GatedRunners(models=["other-model"])
        settings = Settings(runner_urls=runner_urls(1), ready_retries=2, ready_delay=0)
        app = create_app(settings, client=fleet.client())

        with pytest.raises(ReadinessTimeout):
            async with app.router.lifespan_context(app):
                pass
