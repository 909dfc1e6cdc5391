"""Named deferral primitives on top of the running event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional, Set

from .logging import get_logger


class Scheduler:
    """
    Thin wrapper over the asyncio loop used by every component.

    `next_tick` runs a callback on the next loop turn, `call_later` arms a
    cancellable timer, and `spawn` starts a tracked background task whose
    unexpected exceptions are logged instead of lost.
    """

    def __init__(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._loop = loop
        self._tasks: Set[asyncio.Task[Any]] = set()
        self.logger = logger or get_logger("hue.scheduler")

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        return self.loop.time()

    def next_tick(self, callback: Callable[..., Any], *args: Any) -> asyncio.Handle:
        """Run `callback(*args)` on the next loop iteration."""

        return self.loop.call_soon(self._guarded, callback, *args)

    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any
    ) -> asyncio.TimerHandle:
        """Run `callback(*args)` after `delay` seconds unless cancelled."""

        return self.loop.call_later(max(0.0, delay), self._guarded, callback, *args)

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None
    ) -> asyncio.Task[Any]:
        """Start a background task tracked until completion."""

        task = self.loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def _guarded(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            self.logger.exception(
                "Scheduled callback failed", extra={"callback": repr(callback)}
            )

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(
                "Background task failed",
                extra={"task": task.get_name()},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
