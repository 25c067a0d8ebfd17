import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Allows at most `max_requests` acquisitions in any rolling `window_seconds`.

    Waiters queue on an asyncio.Lock, which wakes them in the order they
    arrived, so a burst of callers is served first-requested, first-served.
    """

    def __init__(
        self,
        max_requests: int = 50,
        window_seconds: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    @property
    def available(self) -> int:
        """Slots free right now."""
        self._prune(self._clock())
        return self.max_requests - len(self._timestamps)

    async def acquire(self) -> None:
        """Waits until a request slot is free, then claims it."""
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return
                wait_for = self.window_seconds - (now - self._timestamps[0])
                logger.debug(f"Rate limit reached ({self.max_requests}/{self.window_seconds}s). Waiting {wait_for:.2f}s for a slot.")
                await self._sleep(max(wait_for, 0.0))

    def reset(self) -> None:
        self._timestamps.clear()
