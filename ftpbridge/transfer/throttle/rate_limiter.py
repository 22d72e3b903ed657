"""
Elapsed-budget rate limiter for chunked copy loops.

Keeps the long-run average throughput of one transfer at or under a cap
without fixed time slices: before each chunk goes out, compare the bytes
sent so far against what the cap allows for the elapsed time and sleep off
any excess.

Usage:
    limiter = RateLimiter(1_000_000)  # 1 MB/s
    # In copy loop, before writing each chunk:
    await limiter.throttle(len(chunk))
"""

import asyncio
import time
from typing import Optional, Callable, Awaitable

UNLIMITED_CHUNK_SIZE = 64 * 1024
MIN_CHUNK_SIZE = 1024
MAX_CHUNK_SIZE = 64 * 1024


def chunk_size_for(cap: Optional[int]) -> int:
    """
    Pick a chunk size that keeps throttling responsive.

    Unbounded transfers use the large default. A finite cap uses roughly a
    tenth of the per-second budget, clamped to [MIN_CHUNK_SIZE, MAX_CHUNK_SIZE].
    """
    if not cap:
        return UNLIMITED_CHUNK_SIZE
    return max(MIN_CHUNK_SIZE, min(MAX_CHUNK_SIZE, int(cap) // 10))


class RateLimiter:
    """Throttle for the lifetime of one transfer execution."""

    def __init__(
        self,
        cap: Optional[int],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cap = cap if cap else None
        self._clock = clock
        self._sleep = sleep
        self.start_time = clock()
        self.bytes_sent = 0

    @property
    def unlimited(self) -> bool:
        return self.cap is None

    def delay_for(self, chunk_len: int) -> float:
        """Seconds to wait before emitting a chunk of chunk_len bytes."""
        if self.cap is None:
            return 0.0
        elapsed = self._clock() - self.start_time
        expected = elapsed * self.cap
        if self.bytes_sent + chunk_len <= expected:
            return 0.0
        excess = (self.bytes_sent + chunk_len) - expected
        return excess / self.cap

    async def throttle(self, chunk_len: int) -> float:
        """
        Wait until chunk_len bytes may be emitted, then account for them.

        Returns:
            The delay applied, in seconds
        """
        if self.cap is None:
            return 0.0
        delay = self.delay_for(chunk_len)
        if delay > 0:
            await self._sleep(delay)
        self.bytes_sent += chunk_len
        return delay
