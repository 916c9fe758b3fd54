"""
Background Tasks

Book-keeping for fire-and-forget store calls. The engine never awaits a
store call inside a synchronous API (``acquire``, ``release``, ``activate``);
it spawns the call here instead, keeps a strong reference until it finishes,
and lets ``join()`` wait for quiescence.
"""

import asyncio
import logging
from typing import Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Set of running background tasks owned by one component."""

    def __init__(self, name: str = "starbind"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Coroutine, label: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` on the running loop and track it until it finishes."""
        task = asyncio.get_running_loop().create_task(coro, name=f"{self.name}:{label or 'task'}")
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.failures += 1
            logger.error(f"Background task {task.get_name()} failed: {error!r}", exc_info=error)

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def idle(self) -> bool:
        return not self._tasks

    async def join(self) -> None:
        """Wait until no task is running, including tasks spawned while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["BackgroundTasks"]
