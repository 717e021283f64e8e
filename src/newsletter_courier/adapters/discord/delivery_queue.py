"""Per-destination serialized delivery with throttling retries."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from newsletter_courier.core.errors import RateLimitedError

logger = logging.getLogger(__name__)

Send = Callable[[], Awaitable[None]]


class DeliveryQueue:
    """Serialize sends per key and keep a minimum gap between them.

    Each key owns a FIFO lock, so sends to one channel go out one at a time
    in submission order while different channels proceed independently. A
    `RateLimitedError` makes the queue wait the provider's delay (or the
    default) and resend the same message.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        default_retry_after: float = 5.0,
        max_retries: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval
        self.default_retry_after = default_retry_after
        self.max_retries = max_retries
        self._clock = clock
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._next_allowed: dict[str, float] = {}

    async def submit(self, key: str, send: Send) -> None:
        """Deliver through the key's queue; raises the final failure."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            await self._wait_turn(key)
            try:
                await self._send_with_retries(key, send)
            finally:
                self._next_allowed[key] = self._clock() + self.min_interval

    async def _wait_turn(self, key: str) -> None:
        delay = self._next_allowed.get(key, 0.0) - self._clock()
        if delay > 0:
            await self._sleep(delay)

    async def _send_with_retries(self, key: str, send: Send) -> None:
        attempt = 0
        while True:
            try:
                await send()
                return
            except RateLimitedError as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                delay = self._retry_delay(e.retry_after)
                logger.warning(
                    "Rate limited on %s, retrying after %.1fs (attempt %d/%d)",
                    key,
                    delay,
                    attempt,
                    self.max_retries,
                )
                await self._sleep(delay)

    def _retry_delay(self, retry_after: Optional[float]) -> float:
        if retry_after is None or retry_after <= 0:
            return self.default_retry_after
        return retry_after
