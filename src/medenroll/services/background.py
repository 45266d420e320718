"""
Background task runner.

Fire-and-forget work (document processing after upload, webhook fan-out
after a commit) is spawned here. Failures are logged, and shutdown can
wait for outstanding tasks with ``drain``.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


class BackgroundRunner:
    """Tracks spawned asyncio tasks."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc!r}")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until no tracked task is left, including tasks spawned meanwhile."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, _ = await asyncio.wait(set(self._tasks), timeout=remaining)
            if not done and remaining == 0:
                raise asyncio.TimeoutError(f"{len(self._tasks)} background tasks still running")

    async def shutdown(self) -> None:
        """Cancel whatever is still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} background tasks")
