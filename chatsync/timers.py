"""
Timer and task scoping.

Every timer and background task the engine starts belongs to a scope (the
session, or the currently open conversation). Closing the scope cancels all of
them, so a conversation switch or surface teardown leaves nothing behind.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class TaskScope:
    """Owns asyncio tasks and timer handles for one lifetime."""

    def __init__(self, name: str):
        self.name = name
        self._tasks: set[asyncio.Task] = set()
        self._handles: set[asyncio.TimerHandle] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task | None:
        """Start a task tied to this scope. Returns None (and closes the coroutine) once closed."""
        if self._closed:
            coro.close()
            return None
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s in scope '%s' failed: %s", task.get_name(), self.name, exc,
                         exc_info=exc)

    def call_later(self, delay: float, callback: Callable[..., Any], *args) -> asyncio.TimerHandle | None:
        """Schedule a callback; the handle is dropped from the scope once it fires."""
        if self._closed:
            return None
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire():
            self._handles.discard(handle)
            callback(*args)

        handle = loop.call_later(delay, fire)
        self._handles.add(handle)
        return handle

    def cancel_timer(self, handle: asyncio.TimerHandle | None):
        if handle is None:
            return
        handle.cancel()
        self._handles.discard(handle)

    def cancel_all(self):
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()

    async def drain(self, timeout: float | None = None):
        """Wait for running tasks to finish on their own, then cancel stragglers."""
        tasks = list(self._tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()

    async def aclose(self):
        """Cancel everything and wait for tasks to unwind."""
        self._closed = True
        tasks = list(self._tasks)
        self.cancel_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks) + len(self._handles)
