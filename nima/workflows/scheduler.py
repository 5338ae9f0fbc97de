"""
nima/workflows/scheduler.py
───────────────────────────
Fire-and-forget background work on the running event loop.

Callers get control back immediately; nothing about ordering or timing
relative to the caller's response is promised. The scheduler holds a
reference to every task until it finishes and logs anything that escapes.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, fn: Callable[..., Awaitable[Any]], *args: Any, name: str | None = None) -> asyncio.Task:
        """Start `fn(*args)` as a detached task. Requires a running loop."""
        loop = asyncio.get_running_loop()
        task = loop.create_task(fn(*args), name=name or getattr(fn, "__name__", None))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every scheduled task, including ones they schedule, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


scheduler = BackgroundScheduler()
