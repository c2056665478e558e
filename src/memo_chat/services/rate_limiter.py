"""Per-identity fixed-window rate limiting.

Admission decisions consult a process-local cache first and only go to the
shared store on a cache miss or expired window. Store failures never block
traffic: the limiter fails open and logs a warning.

Concurrent requests for the same identity may both read a stale count from the
store and both be admitted. The limiter deters abuse; it does not do exact
accounting, so no cross-request locking is used.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Dict, Optional

from memo_chat.services.rate_limit_store import RateLimitEntry, RateLimitStore
from memo_chat.utils.logging import get_logger

logger = get_logger("rate_limiter")


class RateLimiter:
    """Admission control backed by an injected ``RateLimitStore``."""

    def __init__(
        self,
        store: RateLimitStore,
        window_seconds: float = 60.0,
        max_requests: int = 30,
        cleanup_batch_size: int = 100,
        cleanup_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.cleanup_batch_size = cleanup_batch_size
        self.cleanup_interval = cleanup_interval or window_seconds * 5
        self._clock = clock
        self._local_cache: Dict[str, RateLimitEntry] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    async def allow(self, identity: str) -> bool:
        """Count one request for ``identity`` and decide whether it may proceed."""
        now = self._clock()

        cached = self._local_cache.get(identity)
        if cached is not None and now < cached.reset_time:
            if cached.count < self.max_requests:
                cached.count += 1
                return True
            return False

        try:
            entry = await self.store.get(identity)

            if entry is None or entry.is_expired(now):
                fresh = RateLimitEntry(
                    count=1, reset_time=now + self.window_seconds, created_at=now
                )
                await self.store.put(identity, fresh)
                self._local_cache[identity] = fresh
                return True

            if entry.count < self.max_requests:
                entry.count += 1
                await self.store.put(identity, entry)
                self._local_cache[identity] = entry
                return True

            self._local_cache[identity] = entry
            return False

        except Exception as e:
            logger.warning(
                f"Rate limit store unavailable, allowing request: {e}",
                extra={"error_type": type(e).__name__},
            )
            return True

    def reset_time(self, identity: str) -> float:
        """Epoch seconds at which the identity's window resets (now if unknown)."""
        cached = self._local_cache.get(identity)
        return cached.reset_time if cached is not None else self._clock()

    def retry_after(self, identity: str) -> int:
        """Whole seconds until the window resets, never less than 1."""
        return max(1, math.ceil(self.reset_time(identity) - self._clock()))

    def remaining(self, identity: str) -> int:
        """Requests left in the current window according to the local cache."""
        cached = self._local_cache.get(identity)
        if cached is None or self._clock() >= cached.reset_time:
            return self.max_requests
        return max(0, self.max_requests - cached.count)

    async def reset(self, identity: str) -> None:
        """Forget all counters for ``identity``."""
        self._local_cache.pop(identity, None)
        try:
            await self.store.delete(identity)
        except Exception as e:
            logger.warning(f"Failed to reset rate limit for {identity}: {e}")

    async def cleanup(self) -> int:
        """Delete store entries older than two windows, at most one batch per call."""
        cutoff = self._clock() - self.window_seconds * 2
        try:
            deleted = await self.store.delete_created_before(cutoff, self.cleanup_batch_size)
        except Exception as e:
            logger.error(f"Rate limiter cleanup failed: {e}")
            return 0

        now = self._clock()
        for identity in [k for k, v in self._local_cache.items() if now >= v.reset_time]:
            del self._local_cache[identity]

        if deleted:
            logger.info(f"Cleaned up {deleted} rate limit entries")
        return deleted

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            await self.cleanup()

    def start_cleanup(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.debug(f"Rate limit cleanup scheduled every {self.cleanup_interval:g}s")

    async def aclose(self) -> None:
        """Stop the periodic sweep."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
