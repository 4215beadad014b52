import asyncio
import time
from datetime import datetime

from cardsnipe.core import utcnow


class SystemClock:
    """Wall clock for deadlines, monotonic clock for sleeping.

    Anything that needs time goes through a clock object so a simulated one can
    be swapped in.
    """

    def now(self) -> datetime:
        return utcnow()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0))

    async def wait(self, event: asyncio.Event, timeout: float | None) -> bool:
        """Wait for `event` or `timeout` seconds; True if the event fired."""
        if event.is_set():
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
