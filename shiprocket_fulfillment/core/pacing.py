"""
Paced sequential execution for Shiprocket calls.

Controls:
- Max 1 concurrent holder (asyncio.Lock) - no parallel fulfillment runs
- Minimum spacing between consecutive holders, measured from release

Parallel dispatch against one Shiprocket session gets burst-rate rejected,
so batch fulfillment runs every order through one of these.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PacedSequencer:
    """
    Async context manager that serializes holders and spaces them out.

    Usage:
        pacer = PacedSequencer(min_interval_seconds=0.5)
        async with pacer:
            await orchestrator.fulfill_order(order_id)
    """

    def __init__(
        self,
        min_interval_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_release: Optional[float] = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def _wait_time(self) -> float:
        if self._last_release is None:
            return 0.0
        elapsed = self._clock() - self._last_release
        return max(0.0, self.min_interval_seconds - elapsed)

    async def __aenter__(self) -> "PacedSequencer":
        await self._lock.acquire()
        try:
            wait = self._wait_time()
            if wait > 0:
                logger.debug(f"Pacing: waiting {wait:.3f}s before next call")
                await self._sleep(wait)
        except BaseException:
            self._lock.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self._last_release = self._clock()
        self._lock.release()
