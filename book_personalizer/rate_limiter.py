import asyncio
import time
from typing import Awaitable, Callable, Optional

from loguru import logger

from .cancellation import CancellationToken, pause

Clock = Callable[[], float]
Sleep = Callable[[float, Optional[CancellationToken]], Awaitable[None]]


def monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """Minimum spacing between generation requests, widened on server overload.

    Every overload signal doubles the spacing (capped at ``max_delay_ms``);
    every success takes back one doubling, so recovery is gradual.
    """

    def __init__(self,
                 min_delay_ms: float = 2000,
                 max_delay_ms: float = 60000,
                 clock: Clock = monotonic_ms,
                 sleep: Sleep = pause):
        if min_delay_ms < 0 or max_delay_ms < min_delay_ms:
            raise ValueError(f"Invalid rate limiter bounds: min={min_delay_ms}, max={max_delay_ms}")
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self.current_delay_ms = min_delay_ms
        self.last_request_time: Optional[float] = None
        self.consecutive_overload_count = 0

        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def wait_before_request(self, token: Optional[CancellationToken] = None) -> None:
        """Suspend until ``current_delay_ms`` has passed since the previous request."""
        async with self._lock:
            if self.last_request_time is not None:
                elapsed = self._clock() - self.last_request_time
                if elapsed < self.current_delay_ms:
                    wait_ms = self.current_delay_ms - elapsed
                    logger.debug(f"Rate limiter: waiting {wait_ms:.0f}ms (current delay {self.current_delay_ms:.0f}ms)")
                    await self._sleep(wait_ms, token)
            self.last_request_time = self._clock()

    def on_overload(self) -> None:
        self.consecutive_overload_count += 1
        self.current_delay_ms = min(self.min_delay_ms * 2 ** self.consecutive_overload_count, self.max_delay_ms)
        logger.warning(f"Server overload signal #{self.consecutive_overload_count}: "
                       f"request spacing raised to {self.current_delay_ms:.0f}ms")

    def on_success(self) -> None:
        if self.consecutive_overload_count == 0:
            return
        self.consecutive_overload_count -= 1
        self.current_delay_ms = max(self.min_delay_ms,
                                    min(self.min_delay_ms * 2 ** self.consecutive_overload_count, self.max_delay_ms))
        logger.info(f"Request spacing relaxed to {self.current_delay_ms:.0f}ms "
                    f"({self.consecutive_overload_count} overload step(s) remaining)")
