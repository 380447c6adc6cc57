from __future__ import annotations

import asyncio


class RateLimiter:
    """Enforces a minimum delay between consecutive external requests."""

    def __init__(self, delay_seconds: float = 1.0) -> None:
        self._delay = delay_seconds
        self._lock = asyncio.Lock()
        self._last_request: float = 0.0

    @property
    def delay(self) -> float:
        return self._delay

    async def wait(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            elapsed = loop.time() - self._last_request
            if elapsed < self._delay:
                await asyncio.sleep(self._delay - elapsed)
            self._last_request = loop.time()
