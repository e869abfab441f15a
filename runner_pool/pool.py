"""RunnerPool — the fixed set of runners with atomic claim and release.

Every method here is synchronous. Under asyncio that makes each call a
critical section: no other coroutine can observe a runner between the
"find idle" and "mark busy" halves of a claim.
"""

import logging
from typing import Optional

from runner_pool.config import RunnerConfig, RunnerState, normalize_url
from runner_pool.errors import RunnerStateError

logger = logging.getLogger(__name__)


class RunnerPool:
    """Manages runner handles and their Idle/Busy state.

    Runners are scanned in registration order ("ordered") or starting after
    the last claimed runner ("round_robin"). Either way a runner is claimed
    only while IDLE and serves one request at a time.
    """

    def __init__(
        self,
        runner_urls: list[str],
        model_name: str,
        selection: str = "ordered",
        failure_threshold: int = 0,
    ):
        if selection not in ("ordered", "round_robin"):
            raise ValueError(f"Unknown runner selection policy: {selection}")
        self.runners: dict[str, RunnerConfig] = {}
        for url in runner_urls:
            url = normalize_url(url)
            if url in self.runners:
                raise ValueError(f"Duplicate runner URL: {url}")
            self.runners[url] = RunnerConfig(url=url, model_name=model_name)
        self.selection = selection
        self.failure_threshold = max(0, failure_threshold)
        self._last_claimed: Optional[str] = None

    def _get(self, runner_url: str) -> RunnerConfig:
        try:
            return self.runners[runner_url]
        except KeyError:
            raise RunnerStateError(f"Unknown runner: {runner_url}") from None

    def _scan_order(self) -> list[str]:
        urls = list(self.runners)
        if self.selection == "round_robin" and self._last_claimed in self.runners:
            start = urls.index(self._last_claimed) + 1
            urls = urls[start:] + urls[:start]
        return urls

    # ─── claim / release ───────────────────────────────────────────────

    def find_idle(self) -> Optional[str]:
        """Return the first IDLE runner in scan order, or None."""
        for url in self._scan_order():
            if self.runners[url].is_idle:
                return url
        return None

    def mark_busy(self, runner_url: str) -> None:
        runner = self._get(runner_url)
        if runner.state != RunnerState.IDLE:
            raise RunnerStateError(
                f"Cannot claim runner {runner_url} in state {runner.state.value}"
            )
        runner.state = RunnerState.BUSY
        self._last_claimed = runner_url

    def mark_idle(self, runner_url: str) -> None:
        runner = self._get(runner_url)
        if runner.state == RunnerState.DRAINING:
            raise RunnerStateError(f"Runner {runner_url} is draining")
        runner.state = RunnerState.IDLE

    def claim_idle(self) -> Optional[str]:
        """Atomically find an idle runner and mark it busy.

        Returns the runner URL, or None when every runner is occupied.
        """
        url = self.find_idle()
        if url is not None:
            self.mark_busy(url)
            logger.info(f"Claimed runner {url} ({self.busy_count}/{self.size} busy)")
        return url

    def release(self, runner_url: str, failed: bool = False, error: Optional[str] = None) -> bool:
        """Record a finished call and free the runner.

        Returns True when the runner is IDLE afterwards and may take the next
        queued request. A DRAINING runner is removed from the pool instead, and
        with a failure threshold set, a runner that keeps failing is parked
        UNREACHABLE.
        """
        runner = self._get(runner_url)
        if not runner.is_busy:
            raise RunnerStateError(
                f"Cannot release runner {runner_url} in state {runner.state.value}"
            )

        if failed:
            runner.failed_requests += 1
            runner.consecutive_failures += 1
            runner.last_error = error
        else:
            runner.completed_requests += 1
            runner.consecutive_failures = 0

        if runner.state == RunnerState.DRAINING:
            del self.runners[runner_url]
            logger.info(f"Runner {runner_url} drained and removed from pool")
            return False

        if (
            self.failure_threshold
            and runner.consecutive_failures >= self.failure_threshold
        ):
            runner.state = RunnerState.UNREACHABLE
            logger.warning(
                f"Runner {runner_url} parked after "
                f"{runner.consecutive_failures} consecutive failures: {error}"
            )
            return False

        self.mark_idle(runner_url)
        logger.info(f"Released runner {runner_url} ({self.busy_count}/{self.size} busy)")
        return True

    # ─── operator transitions ──────────────────────────────────────────

    def drain(self, runner_url: str) -> None:
        """Take a runner out of rotation.

        An idle (or never-ready) runner is removed at once; a busy one finishes
        its current call first.
        """
        runner = self._get(runner_url)
        if runner.state == RunnerState.BUSY:
            runner.state = RunnerState.DRAINING
            logger.info(f"Draining runner {runner_url}")
        elif runner.state != RunnerState.DRAINING:
            del self.runners[runner_url]
            logger.info(f"Removed runner {runner_url} from pool")

    def mark_unreachable(self, runner_url: str, error: Optional[str] = None) -> None:
        runner = self._get(runner_url)
        if runner.is_busy:
            raise RunnerStateError(f"Runner {runner_url} has a call in flight")
        runner.state = RunnerState.UNREACHABLE
        runner.last_error = error

    def restore(self, runner_url: str) -> None:
        """Return an UNREACHABLE or STARTING runner to IDLE."""
        runner = self._get(runner_url)
        if runner.state not in (RunnerState.UNREACHABLE, RunnerState.STARTING):
            raise RunnerStateError(
                f"Cannot restore runner {runner_url} in state {runner.state.value}"
            )
        runner.consecutive_failures = 0
        runner.state = RunnerState.IDLE

    # ─── read-only accessors ───────────────────────────────────────────

    @property
    def size(self) -> int:
        return len(self.runners)

    @property
    def idle_count(self) -> int:
        return sum(1 for r in self.runners.values() if r.is_idle)

    @property
    def busy_count(self) -> int:
        return sum(1 for r in self.runners.values() if r.is_busy)

    @property
    def serving_count(self) -> int:
        """Runners that are idle or running a call and will take more work."""
        return sum(
            1 for r in self.runners.values()
            if r.state in (RunnerState.IDLE, RunnerState.BUSY)
        )

    def runners_in_state(self, state: RunnerState) -> list[str]:
        return [url for url, r in self.runners.items() if r.state == state]

    def snapshot(self) -> list[dict]:
        return [r.model_dump(mode="json") for r in self.runners.values()]
