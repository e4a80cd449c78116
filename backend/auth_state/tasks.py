"""Background task bookkeeping for a single cooperative event loop."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, Set

import structlog

logger = structlog.get_logger("onluyen.auth_state.tasks")


class BackgroundTasks:
    """Track fire-and-forget coroutines so they can be drained or cancelled.

    Failures are logged, never re-raised into the loop's default handler.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, *, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", task=task.get_name(), error=exc.__class__.__name__)

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until no tracked task is left (tasks may spawn more tasks)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["BackgroundTasks"]
