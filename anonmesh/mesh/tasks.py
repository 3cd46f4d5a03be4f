"""Background task helpers for radio callbacks and peer connects.

Provides:
- ``supervised_task`` — ``create_task`` wrapper that logs failures
- ``TaskSet``         — keeps strong references to running tasks and
  cancels them together on shutdown
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger


def supervised_task(
    coro: Awaitable[Any],
    *,
    name: str = "",
) -> asyncio.Task:
    """Wrap ``asyncio.create_task`` with an error-logging callback.

    An exception other than ``CancelledError`` is logged as an error instead
    of surfacing as "Task exception was never retrieved".
    """
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)

    def _on_done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error(
                "[Mesh/Tasks] supervised task {!r} failed: {!r}",
                t.get_name(), exc,
            )

    task.add_done_callback(_on_done)
    return task


class TaskSet:
    """A set of supervised tasks owned by one component."""

    def __init__(self, label: str) -> None:
        self.label = label
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[Any], *, name: str = "") -> asyncio.Task:
        task = supervised_task(coro, name=name or self.label)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def cancel_all(self) -> None:
        """Cancel every running task and wait for them to finish."""
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if not t.done() and t is not current]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug("[Mesh/Tasks] {}: cancelled {} task(s)", self.label, len(tasks))
        self._tasks.clear()


async def call_handler(handler: Callable[..., Any], *args: Any) -> None:
    """Invoke a sync or async handler, awaiting it if it returns a coroutine."""
    result = handler(*args)
    if asyncio.iscoroutine(result):
        await result
