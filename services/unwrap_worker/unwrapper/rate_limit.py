from __future__ import annotations

import asyncio
import time


class AsyncRateLimiter:
    """Enforce a minimum spacing between outbound requests of one process.

    Example: min_interval=0.5 lets acquire() return at most every half second.
    The window is in-memory only; several workers sharing an upstream quota need
    a shared limiter injected in its place.
    """

    def __init__(self, min_interval: float) -> None:
        self.min_interval = max(0.0, float(min_interval))
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            if self._last is not None:
                wait = self._last + self.min_interval - time.monotonic()
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last = time.monotonic()
