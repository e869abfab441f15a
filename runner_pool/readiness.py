"""Readiness probing — wait for runners to report their model loaded.

Model loading is slow and asynchronous relative to process start, so each
runner's model list is polled with a fixed delay between attempts until the
expected model shows up or the retry budget runs out.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from runner_pool.config import RunnerConfig, RunnerState
from runner_pool.errors import ReadinessTimeout
from runner_pool.pool import RunnerPool

logger = logging.getLogger(__name__)


def _entry_model(entry: Any) -> Optional[str]:
    """Model id of one manifest entry, or None if it is not ready."""
    if isinstance(entry, str):
        return entry
    if not isinstance(entry, dict):
        return None
    status = entry.get("status")
    if status is not None and status != "ready":
        return None
    return entry.get("id") or entry.get("name") or entry.get("model")


def parse_models(data: Any) -> set[str]:
    """Extract ready model ids from a /v1/models style response.

    Handles OpenAI ({"data": [{"id": ...}]}), Ollama ({"models": [...]})
    and bare lists.
    """
    if isinstance(data, dict):
        entries = data.get("data", data.get("models", []))
    else:
        entries = data
    if not isinstance(entries, list):
        return set()
    models = set()
    for entry in entries:
        model = _entry_model(entry)
        if model:
            models.add(model)
    return models


async def probe_health(
    client: httpx.AsyncClient, runner_url: str, health_path: str = "/v1/models"
) -> set[str]:
    """Fetch the set of ready models from a runner.

    Raises httpx.HTTPError on transport failure or non-success status.
    """
    response = await client.get(f"{runner_url}{health_path}")
    response.raise_for_status()
    return parse_models(response.json())


async def wait_ready(
    client: httpx.AsyncClient,
    runner: RunnerConfig,
    *,
    retries: int = 40,
    delay: float = 3.0,
    health_path: str = "/v1/models",
) -> None:
    """Poll a runner until it lists its model, or raise ReadinessTimeout."""
    logger.info(
        f"Waiting for runner {runner.url} and model {runner.model_name} to load..."
    )
    for attempt in range(1, retries + 1):
        try:
            models = await probe_health(client, runner.url, health_path)
        except (httpx.HTTPError, ValueError) as e:
            logger.info(
                f"Waiting for runner {runner.url}... ({attempt}/{retries}): {e}"
            )
        else:
            if runner.model_name in models:
                logger.info(
                    f"Runner {runner.url} is ready with model {runner.model_name}"
                )
                return
            logger.info(
                f"Model {runner.model_name} not ready yet on {runner.url} "
                f"({attempt}/{retries})"
            )
        if attempt < retries:
            await asyncio.sleep(delay)

    logger.error(
        f"Runner {runner.url} or model {runner.model_name} "
        f"did not become ready in time"
    )
    raise ReadinessTimeout(runner.url, runner.model_name, retries)


async def wait_all_ready(
    client: httpx.AsyncClient,
    pool: RunnerPool,
    *,
    retries: int = 40,
    delay: float = 3.0,
    health_path: str = "/v1/models",
) -> None:
    """Probe every STARTING runner concurrently and mark each one IDLE.

    The first ReadinessTimeout cancels the remaining probes and propagates.
    """

    async def _probe(url: str) -> None:
        await wait_ready(
            client,
            pool.runners[url],
            retries=retries,
            delay=delay,
            health_path=health_path,
        )
        pool.restore(url)

    tasks = [
        asyncio.create_task(_probe(url))
        for url in pool.runners_in_state(RunnerState.STARTING)
    ]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    logger.info(f"All {pool.size} runners ready")
