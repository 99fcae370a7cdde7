"""Request shaping for the Autotask REST API (default 5 requests/second)."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """Sliding-window limiter: at most ``max_requests`` starts per ``window_seconds``."""

    def __init__(self, max_requests: int = 5, window_seconds: float = 1.0):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @classmethod
    def per_second(cls, requests_per_second: int) -> "RateLimiter":
        return cls(max_requests=requests_per_second, window_seconds=1.0)

    @classmethod
    def per_minute(cls, requests_per_minute: int) -> "RateLimiter":
        return cls(max_requests=requests_per_minute, window_seconds=60.0)

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window_seconds:
            self._requests.popleft()

    async def wait_for_slot(self) -> None:
        async with self._lock:
            while True:
                now = time.monotonic()
                self._prune(now)
                if len(self._requests) < self.max_requests:
                    self._requests.append(now)
                    return
                wait_time = self.window_seconds - (now - self._requests[0])
                logger.debug(
                    f"Rate limit reached ({len(self._requests)}/{self.max_requests}), "
                    f"waiting {wait_time * 1000:.0f}ms"
                )
                await asyncio.sleep(max(wait_time, 0))

    def can_make_request(self) -> bool:
        self._prune(time.monotonic())
        return len(self._requests) < self.max_requests

    def get_status(self) -> Dict[str, float]:
        self._prune(time.monotonic())
        return {
            "active_requests": len(self._requests),
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }

    def reset(self) -> None:
        self._requests.clear()
        logger.info("Rate limiter reset")


class ConcurrencyLimiter:
    """Caps the number of in-flight upstream requests."""

    def __init__(self, max_concurrent: int = 10):
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.active = 0
        self.pending = 0

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        self.pending += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.pending -= 1
        self.active += 1
        try:
            return await fn()
        finally:
            self.active -= 1
            self._semaphore.release()
