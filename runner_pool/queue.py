"""AdmissionQueue — bounded FIFO of requests waiting for a runner."""

import asyncio
import collections
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from runner_pool.errors import QueueFull

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PendingRequest:
    """A unit of work waiting in (or passing through) the admission queue."""

    payload: Any
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)
    deadline: Optional[float] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    @property
    def age(self) -> float:
        return time.monotonic() - self.enqueued_at


class AdmissionQueue:
    """Bounded FIFO with synchronous rejection on overflow.

    Never blocks: enqueue either accepts or raises QueueFull. Entries whose
    caller has already given up are skipped on dequeue rather than dispatched.
    """

    def __init__(self, max_size: int):
        self.max_size = max(0, max_size)
        self._items: collections.deque[PendingRequest] = collections.deque()

    def enqueue(self, request: PendingRequest) -> None:
        if len(self._items) >= self.max_size:
            logger.warning(
                f"Queue full ({len(self._items)}/{self.max_size}), "
                f"rejecting request {request.request_id}"
            )
            raise QueueFull(self.max_size)
        self._items.append(request)
        logger.info(
            f"Queued request {request.request_id} "
            f"(depth {len(self._items)}/{self.max_size})"
        )

    def dequeue(self) -> Optional[PendingRequest]:
        """Pop the oldest request that still has a waiting caller."""
        while self._items:
            request = self._items.popleft()
            if request.future.done():
                logger.info(f"Dropping abandoned request {request.request_id}")
                continue
            return request
        return None

    def remove(self, request: PendingRequest) -> bool:
        try:
            self._items.remove(request)
        except ValueError:
            return False
        return True

    def drain(self) -> list[PendingRequest]:
        """Empty the queue, returning everything that was waiting."""
        items = list(self._items)
        self._items.clear()
        return items

    def oldest_age(self) -> Optional[float]:
        if not self._items:
            return None
        return self._items[0].age

    @property
    def depth(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, request: PendingRequest) -> bool:
        return request in self._items
