"""Error types raised by the runner pool, dispatcher and gateway.

Per-request failures derive from DispatchError and are delivered through the
caller's future. ReadinessTimeout is the only fatal error: the process must not
serve traffic when it is raised.
"""

from typing import Optional


class RunnerPoolError(Exception):
    """Base class for all runner pool errors."""


class ConfigError(RunnerPoolError):
    """Invalid configuration."""


class RunnerStateError(RunnerPoolError):
    """Illegal runner state transition."""


class ReadinessTimeout(RunnerPoolError):
    """A runner never reported its model ready within the retry budget."""

    def __init__(self, runner_url: str, model_name: str, attempts: int):
        super().__init__(
            f"Runner {runner_url} did not report model {model_name} ready "
            f"after {attempts} attempts"
        )
        self.runner_url = runner_url
        self.model_name = model_name
        self.attempts = attempts


class DispatchError(RunnerPoolError):
    """Base class for request-scoped failures."""


class QueueFull(DispatchError):
    """Backlog at capacity; the caller should retry later."""

    def __init__(self, max_size: int):
        super().__init__(f"Server busy: admission queue full ({max_size})")
        self.max_size = max_size


class RunnerCallFailed(DispatchError):
    """The call to a runner did not produce a successful response."""

    def __init__(self, runner_url: str, message: str):
        super().__init__(message)
        self.runner_url = runner_url


class RunnerUnreachable(RunnerCallFailed):
    """Transport-level failure reaching a runner."""

    def __init__(self, runner_url: str, message: str):
        super().__init__(runner_url, f"Runner {runner_url} unreachable: {message}")
        self.reason = message


class RunnerRejected(RunnerCallFailed):
    """Runner answered with a non-success status.

    The body is kept verbatim so the gateway can pass it through.
    """

    def __init__(
        self,
        runner_url: str,
        status_code: int,
        body: str,
        content_type: Optional[str] = None,
    ):
        super().__init__(
            runner_url, f"Runner {runner_url} responded {status_code}"
        )
        self.status_code = status_code
        self.body = body
        self.content_type = content_type


class RequestTimeout(DispatchError):
    """The request's deadline expired before a result was delivered."""

    def __init__(self, timeout: float, queued: bool):
        where = "in queue" if queued else "while running"
        super().__init__(f"Request timed out after {timeout}s ({where})")
        self.timeout = timeout
        self.queued = queued


class DispatcherClosed(DispatchError):
    """The dispatcher shut down before the request was served."""


class NoRunnersAvailable(DispatchError):
    """Every runner has been drained out of the pool."""


class RateLimitExceeded(RunnerPoolError):
    """A client exceeded its request budget for the current window."""

    def __init__(self, key: str, limit: int, window_seconds: float, retry_in: float):
        super().__init__(
            f"Rate limit exceeded for {key}: {limit} per {window_seconds}s"
        )
        self.key = key
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_in = retry_in
