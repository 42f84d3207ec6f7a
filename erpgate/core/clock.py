"""Time source and delay capability injected into retry and breaker logic."""

import asyncio
import time


class Clock:
    """Monotonic time in seconds plus an awaitable sleep."""

    def now(self) -> float:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


system_clock = SystemClock()
