"""Runner and process configuration.

RunnerConfig tracks one runner's state in the pool. Settings is the
process-wide configuration surface, read from the environment at startup.
"""

import enum
import os
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from runner_pool.errors import ConfigError

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class RunnerState(str, enum.Enum):
    """Lifecycle state of a runner.

    Only IDLE runners are eligible for new work.
    """

    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DRAINING = "draining"
    UNREACHABLE = "unreachable"


class RunnerConfig(BaseModel):
    """One backend inference process, identified by its base URL.

    Starts in STARTING and only becomes IDLE after passing the readiness
    probe. The counters are diagnostics; they never gate admission except
    through the pool's optional failure threshold.
    """

    url: str
    model_name: str
    state: RunnerState = RunnerState.STARTING
    completed_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    @property
    def is_busy(self) -> bool:
        return self.state in (RunnerState.BUSY, RunnerState.DRAINING)

    @property
    def is_idle(self) -> bool:
        return self.state == RunnerState.IDLE


def normalize_url(url: str) -> str:
    return url.strip().rstrip("/")


class Settings(BaseModel):
    """Configuration consumed by the gateway and the scheduler."""

    runner_urls: list[str] = ["http://ollama:11434"]
    model_name: str = "gemma:2b"
    max_queue_size: int = Field(default=16, ge=0)
    ready_retries: int = Field(default=40, ge=1)
    ready_delay: float = Field(default=3.0, ge=0)
    health_path: str = "/v1/models"
    completion_path: str = "/v1/completion"
    request_timeout: Optional[float] = Field(default=None, gt=0)
    selection: Literal["ordered", "round_robin"] = "ordered"
    failure_threshold: int = Field(default=0, ge=0)
    rate_limit_requests: int = Field(default=0, ge=0)
    rate_limit_window: float = Field(default=60.0, gt=0)
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @field_validator("runner_urls")
    @classmethod
    def _check_runner_urls(cls, value: list[str]) -> list[str]:
        urls = [normalize_url(u) for u in value if u.strip()]
        if not urls:
            raise ValueError("at least one runner URL is required")
        if len(set(urls)) != len(urls):
            raise ValueError(f"duplicate runner URLs: {urls}")
        return urls

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("health_path", "completion_path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        if not value.startswith("/"):
            return "/" + value
        return value

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        Unset variables keep their defaults. RUNNER_URLS is a comma-separated
        list; a single OLLAMA_HOST is accepted when it is absent.
        """
        env = os.environ if environ is None else environ
        values: dict = {}

        urls = env.get("RUNNER_URLS") or env.get("OLLAMA_HOST")
        if urls:
            values["runner_urls"] = urls.split(",")

        model = env.get("MODEL_NAME") or env.get("OLLAMA_DEFAULT_MODEL")
        if model:
            values["model_name"] = model

        mapping = {
            "MAX_QUEUE_SIZE": "max_queue_size",
            "READY_RETRIES": "ready_retries",
            "READY_DELAY_SECONDS": "ready_delay",
            "HEALTH_PATH": "health_path",
            "COMPLETION_PATH": "completion_path",
            "REQUEST_TIMEOUT_SECONDS": "request_timeout",
            "RUNNER_SELECTION": "selection",
            "FAILURE_THRESHOLD": "failure_threshold",
            "RATE_LIMIT_REQUESTS": "rate_limit_requests",
            "RATE_LIMIT_WINDOW_SECONDS": "rate_limit_window",
            "HOST": "host",
            "PORT": "port",
            "LOG_LEVEL": "log_level",
        }
        for env_name, field_name in mapping.items():
            raw = env.get(env_name)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
