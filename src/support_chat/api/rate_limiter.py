"""Per-session rate limiter using a sliding window."""

import asyncio
import math
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Protocol, Tuple

from structlog import get_logger

from ..domain.errors import RateLimitExceeded
from ..observability import RATE_LIMITED

logger = get_logger()

Clock = Callable[[], float]


class SlidingWindowStore(Protocol):
    """Shared counter store. ``try_acquire`` must be atomic per key."""

    async def try_acquire(
        self, key: str, now: float, window: float, limit: int
    ) -> Tuple[bool, Optional[float]]:
        """Record a hit if under ``limit``. Returns (allowed, oldest timestamp in window)."""

    async def count(self, key: str, now: float, window: float) -> int:
        """Hits for ``key`` still inside the window."""

    async def purge(self, now: float, window: float) -> int:
        """Drop keys with no hits inside the window. Returns how many were dropped."""


class InMemorySlidingWindowStore:
    """Window store for single-instance deployments."""

    def __init__(self) -> None:
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _evict(requests: Deque[float], now: float, window: float) -> None:
        while requests and now - requests[0] >= window:
            requests.popleft()

    async def try_acquire(
        self, key: str, now: float, window: float, limit: int
    ) -> Tuple[bool, Optional[float]]:
        async with self._lock:
            requests = self._requests.setdefault(key, deque())
            self._evict(requests, now, window)
            if len(requests) >= limit:
                return False, requests[0]
            requests.append(now)
            return True, requests[0]

    async def count(self, key: str, now: float, window: float) -> int:
        async with self._lock:
            requests = self._requests.get(key)
            if not requests:
                return 0
            self._evict(requests, now, window)
            return len(requests)

    async def purge(self, now: float, window: float) -> int:
        async with self._lock:
            dropped = 0
            for key in list(self._requests):
                self._evict(self._requests[key], now, window)
                if not self._requests[key]:
                    del self._requests[key]
                    dropped += 1
            return dropped


class RateLimiter:
    """Allows at most ``max_messages`` per ``window_seconds`` for each session token."""

    def __init__(
        self,
        store: SlidingWindowStore,
        max_messages: int = 15,
        window_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        self.store = store
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self.clock = clock
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info(
            "rate_limiter_initialized",
            max_messages=max_messages,
            window_seconds=window_seconds,
        )

    async def start(self) -> None:
        """Start the idle-key cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self) -> None:
        """Stop the idle-key cleanup task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _periodic_cleanup(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.window_seconds)
                dropped = await self.store.purge(self.clock(), self.window_seconds)
                if dropped:
                    logger.debug("rate_limiter_purged", keys=dropped)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("rate_limiter_cleanup_error", error=str(e))

    async def allow(self, session_token: str) -> bool:
        """Record a message for ``session_token`` if the window has room."""
        allowed, _ = await self.store.try_acquire(
            session_token, self.clock(), self.window_seconds, self.max_messages
        )
        return allowed

    async def check(self, session_token: str) -> None:
        """Like :meth:`allow` but raises :class:`RateLimitExceeded` with a retry hint."""
        now = self.clock()
        allowed, oldest = await self.store.try_acquire(
            session_token, now, self.window_seconds, self.max_messages
        )
        if allowed:
            return

        retry_after = self.window_seconds
        if oldest is not None:
            retry_after = self.window_seconds - (now - oldest)
        retry_after_seconds = max(1, math.ceil(retry_after))
        RATE_LIMITED.inc()
        logger.warning(
            "rate_limit_exceeded",
            session_token=session_token,
            max_messages=self.max_messages,
            retry_after_seconds=retry_after_seconds,
        )
        raise RateLimitExceeded(retry_after_seconds)

    async def remaining(self, session_token: str) -> int:
        """Messages still allowed in the current window."""
        used = await self.store.count(session_token, self.clock(), self.window_seconds)
        return max(0, self.max_messages - used)
