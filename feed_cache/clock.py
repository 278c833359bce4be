"""Wall-clock and sleep primitives shared by the rate limiter, scheduler and store."""

import asyncio
import time


class Clock:
    """
    Source of the current time and of timed suspensions.

    Components take a clock instead of calling ``time.time`` and
    ``asyncio.sleep`` directly so tests can simulate time without waiting.
    """

    def now(self) -> float:
        """Return the current time in seconds since the epoch."""
        return time.time()

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling coroutine for ``seconds``."""
        await asyncio.sleep(max(0.0, seconds))
