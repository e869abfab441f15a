"""runner-pool — Admission and dispatch for a fixed pool of inference runners.

Public API:
    RunnerPool          — runner handles with atomic claim/release
    AdmissionQueue      — bounded FIFO backlog with synchronous rejection
    PendingRequest      — dataclass for queued work
    Dispatcher          — submit/call, completion-triggered handoff
    RunnerResponse      — successful runner reply, passed through
    RunnerConfig        — Pydantic model for per-runner state
    RunnerState         — runner lifecycle states
    Settings            — process configuration, read from the environment
    wait_ready          — readiness probe for one runner
    wait_all_ready      — readiness probe for the whole pool
"""

from runner_pool.config import RunnerConfig, RunnerState, Settings
from runner_pool.errors import (
    ConfigError,
    DispatchError,
    DispatcherClosed,
    NoRunnersAvailable,
    QueueFull,
    RateLimitExceeded,
    ReadinessTimeout,
    RequestTimeout,
    RunnerCallFailed,
    RunnerPoolError,
    RunnerRejected,
    RunnerStateError,
    RunnerUnreachable,
)
from runner_pool.pool import RunnerPool
from runner_pool.queue import AdmissionQueue, PendingRequest
from runner_pool.dispatcher import Dispatcher, RunnerResponse
from runner_pool.readiness import probe_health, wait_all_ready, wait_ready

__all__ = [
    "RunnerPool",
    "AdmissionQueue",
    "PendingRequest",
    "Dispatcher",
    "RunnerResponse",
    "RunnerConfig",
    "RunnerState",
    "Settings",
    "probe_health",
    "wait_ready",
    "wait_all_ready",
    "RunnerPoolError",
    "ConfigError",
    "RunnerStateError",
    "ReadinessTimeout",
    "DispatchError",
    "QueueFull",
    "RunnerCallFailed",
    "RunnerUnreachable",
    "RunnerRejected",
    "RequestTimeout",
    "DispatcherClosed",
    "NoRunnersAvailable",
    "RateLimitExceeded",
]
