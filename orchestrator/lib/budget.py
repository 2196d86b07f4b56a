from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
import asyncio
import time


class DispatchBudget:
    """Single arbitration point for every outbound network operation.

    Bounds concurrency with a counting semaphore and, when ``min_interval_ms`` is set,
    spaces dispatch starts so the remote rate limit is respected across all
    transactions.
    """

    def __init__(
        self,
        *,
        max_concurrency: int,
        min_interval_ms: int = 0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be positive")
        self.max_concurrency = max_concurrency
        self.min_interval_ms = min_interval_ms
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._spacing_lock = asyncio.Lock()
        self._clock = clock
        self._sleep = sleep
        self._last_start: float | None = None
        self.in_use = 0
        self.peak_in_use = 0
        self.dispatched_total = 0

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            await self._respect_spacing()
            self.in_use += 1
            self.peak_in_use = max(self.peak_in_use, self.in_use)
            self.dispatched_total += 1
            try:
                yield
            finally:
                self.in_use -= 1

    async def _respect_spacing(self) -> None:
        if self.min_interval_ms <= 0:
            return
        async with self._spacing_lock:
            now = self._clock()
            if self._last_start is not None:
                wait_seconds = self._last_start + self.min_interval_ms / 1000 - now
                if wait_seconds > 0:
                    await self._sleep(wait_seconds)
                    now = self._clock()
            self._last_start = now
