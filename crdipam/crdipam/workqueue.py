"""
Deduplicating work queue with per-key exponential backoff.

A key is held at most once in the queue. While a worker processes a key,
further adds only mark it dirty; `done` puts it back so the latest state is
processed once more. Workers must call `done` exactly once per `get`.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Hashable, Optional, Set, Tuple

from . import config

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """Per-key failure counter yielding base * 2**failures, capped at max_delay."""

    def __init__(
        self,
        base_delay: float = config.DEFAULT_BACKOFF_BASE_SECONDS,
        max_delay: float = config.DEFAULT_BACKOFF_MAX_SECONDS,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}

    def when(self, key: Hashable) -> float:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        # Avoid float overflow for keys failing for a very long time
        if failures >= 64:
            return self.max_delay
        return min(self.base_delay * (2**failures), self.max_delay)

    def forget(self, key: Hashable) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)


class RateLimitingQueue:
    """Work queue shared by the workers of one resource kind."""

    def __init__(self, name: str, backoff: Optional[ExponentialBackoff] = None):
        self.name = name
        self.backoff = backoff or ExponentialBackoff()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._not_empty = asyncio.Event()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Queues a key unless it is already pending."""
        if self._shutting_down:
            return
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return
        self._queue.append(key)
        self._not_empty.set()

    async def get(self) -> Tuple[Optional[Hashable], bool]:
        """
        Waits for the next key.

        Returns:
            A (key, shutdown) tuple. Once the queue is shut down and drained
            this returns (None, True).
        """
        while not self._queue and not self._shutting_down:
            self._not_empty.clear()
            await self._not_empty.wait()
        if not self._queue:
            return None, True
        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key, False

    def done(self, key: Hashable) -> None:
        """Marks a key processed; a key added meanwhile is queued again."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._not_empty.set()

    def forget(self, key: Hashable) -> None:
        self.backoff.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.backoff.num_requeues(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queues a key once `delay` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def add_rate_limited(self, key: Hashable) -> None:
        """Queues a key after the backoff delay for its consecutive failures."""
        delay = self.backoff.when(key)
        logger.debug(f"Queue '{self.name}': requeueing '{key}' in {delay:.3f}s")
        self.add_after(key, delay)

    def shutdown(self) -> None:
        """Stops accepting keys and wakes up all waiting workers."""
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._not_empty.set()
