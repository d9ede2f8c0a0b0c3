"""
Work Queue - De-duplicating, rate-limited queue of reconcile requests.

A key is never handed to two workers at once: adding a key that is being
processed only marks it dirty, and it is queued again once the worker calls
done(). Bursts of adds for the same key collapse into one entry.
"""

import asyncio
import logging
import random
import time
from collections import deque
from typing import Deque, Dict, Hashable, Optional, Set, Tuple

logger = logging.getLogger(__name__)

_SHUTDOWN = object()


class ExponentialBackoff:
    """
    Per-key exponential backoff with jitter.

    The n-th consecutive failure of a key waits
    ``min(base_delay * 2**n, max_delay)`` seconds, scaled by a random factor
    in ``[1 - jitter_factor, 1 + jitter_factor]``.
    """

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 1000.0,
        jitter_factor: float = 0.1,
    ):
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._failures: Dict[Hashable, int] = {}

    def when(self, key: Hashable) -> float:
        """Record a failure for ``key`` and return the delay before its retry."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1

        # Cap the exponent so huge failure counts cannot overflow
        delay = min(self.base_delay * (2 ** min(failures, 32)), self.max_delay)
        if self.jitter_factor:
            delay *= 1 + (random.random() * 2 - 1) * self.jitter_factor
        return delay

    def forget(self, key: Hashable) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)


class WorkQueue:
    """
    Async work queue with per-key serialization and delayed adds.

    Workers loop on ``get()`` / ``done()``; ``get()`` returns None once the
    queue has been shut down.
    """

    def __init__(self, rate_limiter: Optional[ExponentialBackoff] = None):
        self.rate_limiter = rate_limiter or ExponentialBackoff()
        self._ready: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: Dict[Hashable, Tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty - self._processing)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Queue ``key`` unless it is already queued."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._ready.put_nowait(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """
        Queue ``key`` after ``delay`` seconds.

        If the key is already waiting, the earlier deadline wins.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = time.monotonic() + delay
        existing = self._waiting.get(key)
        if existing is not None:
            if existing[0] <= deadline:
                return
            existing[1].cancel()

        handle = loop.call_later(delay, self._fire, key)
        self._waiting[key] = (deadline, handle)

    def _fire(self, key: Hashable) -> None:
        self._waiting.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: Hashable) -> float:
        """Queue ``key`` after its backoff delay and return that delay."""
        delay = self.rate_limiter.when(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        """Reset the backoff of ``key`` (after a success or a terminal error)."""
        self.rate_limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.rate_limiter.num_requeues(key)

    def is_processing(self, key: Hashable) -> bool:
        return key in self._processing

    async def get(self) -> Optional[Hashable]:
        """Wait for the next key and mark it as processing."""
        if self._shutting_down:
            return None
        key = await self._ready.get()
        if key is _SHUTDOWN:
            # Wake the next waiting worker as well
            self._ready.put_nowait(_SHUTDOWN)
            return None
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: Hashable) -> None:
        """Mark ``key`` as processed; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._ready.put_nowait(key)

    def shutdown(self) -> None:
        """Stop handing out keys and drop pending delayed adds."""
        if self._shutting_down:
            return
        self._shutting_down = True
        for _, handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        self._ready.put_nowait(_SHUTDOWN)
        logger.debug("Work queue shut down")
