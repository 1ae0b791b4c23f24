"""
Concurrency limiter for the exhaustive subnet scan
"""

from __future__ import annotations

import asyncio


class ConcurrencyLimiter:
    """Counting limiter that records how many probes are in flight.

    Usage:
        limiter = ConcurrencyLimiter(10)
        async with limiter:
            await probe(ip)
    """

    def __init__(self, limit: int = 10):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_flight = 0
        self.peak = 0

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)

    def release(self) -> None:
        self.in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self) -> "ConcurrencyLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()
