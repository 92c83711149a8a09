"""
Bounded re-fetch of a remote resource that may still be processing.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BoundedPoller:
    """Re-fetch at most ``max_attempts`` times, ``delay`` seconds apart.

    The caller gets back whatever the last successful fetch returned, done
    or not. A fetch that raises is logged and ends polling early.
    """

    def __init__(
        self,
        max_attempts: int = 1,
        delay: float = 3.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self.max_attempts = max_attempts
        self.delay = delay
        self._sleep = sleep or asyncio.sleep

    async def poll(
        self,
        initial: T,
        fetch: Callable[[], Awaitable[T]],
        is_done: Callable[[T], bool],
    ) -> T:
        current = initial
        attempts = 0
        while not is_done(current) and attempts < self.max_attempts:
            attempts += 1
            await self._sleep(self.delay)
            try:
                current = await fetch()
            except Exception as e:
                logger.warning(f"Re-fetch attempt {attempts} failed, keeping last known value: {e}")
                break
        return current
