"""
Best-effort side channel for work that must never affect the request that
triggered it (notifications, emails).

Tasks are spawned on the running loop, referenced until they finish and
their failures are logged, never re-raised.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Set

from core.logging import structured_logger

logger = logging.getLogger(__name__)


class SideEffectDispatcher:
    """Spawns fire-and-forget coroutines and keeps them alive until done"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, name: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> asyncio.Task:
        task = asyncio.create_task(self._run(name, func, *args, **kwargs), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> None:
        try:
            await func(*args, **kwargs)
        except asyncio.CancelledError:
            logger.warning(f"Side effect {name} cancelled")
            raise
        except Exception as e:
            structured_logger.error(
                message=f"Side effect {name} failed",
                metadata={"side_effect": name},
                exception=e,
            )

    async def drain(self) -> None:
        """Wait for every task dispatched so far (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
