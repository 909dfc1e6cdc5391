"""Callback lists for discovery, bridge lifecycle and refresh events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional, Set

# Discovery event kinds passed as the first callback argument.
EVENT_START = "start"
EVENT_ADD = "add"
EVENT_DEL = "del"
EVENT_END = "end"

Callback = Callable[..., Any]


class CallbackList:
    """
    Ordered set of callbacks notified with positional arguments.

    A callback that raises is logged and skipped; the remaining callbacks
    are still notified. Coroutine functions are scheduled as tasks.
    """

    def __init__(self, logger: logging.Logger, label: str) -> None:
        self._callbacks: List[Callback] = []
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._logger = logger
        self._label = label

    def add(self, callback: Callback) -> Callback:
        """Register a callback; the return value can be passed to `remove`."""

        if not callable(callback):
            raise TypeError("Callback must be callable")
        if callback not in self._callbacks:
            self._callbacks.append(callback)
        return callback

    def remove(self, callback: Callback) -> bool:
        """Remove a callback. Returns False if it was not registered."""

        try:
            self._callbacks.remove(callback)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)

    def __contains__(self, callback: object) -> bool:
        return callback in self._callbacks

    def notify(self, *args: Any) -> None:
        # Iterate over a copy so callbacks may unsubscribe themselves.
        for callback in list(self._callbacks):
            try:
                if inspect.iscoroutinefunction(callback):
                    task = asyncio.get_running_loop().create_task(callback(*args))
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
                else:
                    callback(*args)
            except Exception:
                self._logger.exception(
                    "Error notifying %s callback",
                    self._label,
                    extra={"callback": repr(callback), "event": _describe(args)},
                )

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "Asynchronous %s callback failed",
                self._label,
                exc_info=(type(exc), exc, exc.__traceback__),
            )


def _describe(args: tuple) -> Optional[str]:
    if not args:
        return None
    return repr(args[0])
