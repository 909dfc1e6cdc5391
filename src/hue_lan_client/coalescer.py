"""Rate-limited batching of deferred light, group and scene writes."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Protocol

from .errors import TransportError
from .logging import get_logger
from .metrics import observe_flush
from .scheduler import Scheduler

DEFAULT_FLUSH_INTERVAL = 0.2


class Outcome(NamedTuple):
    """Result of an asynchronous bridge operation."""

    success: bool
    value: Any = None


class Flushable(Protocol):
    """Anything with pending changes that can write them to its bridge."""

    api_category: str

    async def send_changes(self) -> Outcome:
        ...


CompletionCallback = Callable[[bool, Any], Any]


class RateLimitedCoalescer:
    """
    Collects targets with pending changes and flushes them in paced cycles.

    The first `add_target` after an idle period schedules a flush on the
    next loop turn, so several changes made by one logical operation share
    a single write. Later cycles start no closer than `interval` seconds
    apart. Within a cycle targets are written one at a time. When a spacing
    interval passes with nothing pending, the flush loop exits.
    """

    def __init__(
        self,
        interval: float = DEFAULT_FLUSH_INTERVAL,
        scheduler: Optional[Scheduler] = None,
        name: str = "",
    ) -> None:
        self.interval = interval
        self.name = name
        self.scheduler = scheduler if scheduler is not None else Scheduler()
        self.logger = get_logger("hue.coalescer")
        self._pending: Dict[Flushable, List[CompletionCallback]] = {}
        self._inflight: Dict[Flushable, List[CompletionCallback]] = {}
        self._task: Optional[asyncio.Task[None]] = None
        self._closed = False
        self.cycle_starts: List[float] = []

    @property
    def armed(self) -> bool:
        return self._task is not None

    @property
    def pending(self) -> int:
        return len(self._pending)

    def add_target(self, target: Flushable, callback: Optional[CompletionCallback] = None) -> None:
        """Mark `target` as having pending changes; `callback(success, result)` runs after its write."""

        if self._closed:
            if callback is not None:
                self.scheduler.next_tick(
                    self._invoke, callback, Outcome(False, TransportError("Bridge closed")), target
                )
            return
        callbacks = self._pending.setdefault(target, [])
        if callback is not None:
            callbacks.append(callback)
        if self._task is None:
            self._task = self.scheduler.spawn(self._run(), name=f"hue-flush-{self.name}")

    def close(self) -> None:
        """Stop flushing and fail every callback that has not run yet."""

        self._closed = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
        failure = Outcome(False, TransportError("Bridge closed"))
        for batch in (self._inflight, self._pending):
            for target, callbacks in batch.items():
                for callback in callbacks:
                    self._invoke(callback, failure, target)
            batch.clear()

    async def _run(self) -> None:
        try:
            while self._pending:
                started = self.scheduler.time()
                self.cycle_starts.append(started)
                del self.cycle_starts[:-16]
                await self._flush()
                delay = started + self.interval - self.scheduler.time()
                if delay > 0:
                    await asyncio.sleep(delay)
        finally:
            if self._task is asyncio.current_task():
                self._task = None

    async def _flush(self) -> None:
        batch = self._pending
        self._pending = {}
        self._inflight = batch
        observe_flush(len(batch))
        self.logger.debug(
            "Flushing deferred changes",
            extra={"bridge": self.name, "targets": len(batch)},
        )
        while batch:
            target = next(iter(batch))
            try:
                outcome = await target.send_changes()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.error(
                    "Error sending deferred changes",
                    extra={"bridge": self.name, "target": repr(target)},
                    exc_info=(type(exc), exc, exc.__traceback__),
                )
                outcome = Outcome(False, exc)
            callbacks = batch.pop(target)
            for callback in callbacks:
                self._invoke(callback, outcome, target)
        self._inflight = {}

    def _invoke(self, callback: CompletionCallback, outcome: Outcome, target: Any) -> None:
        try:
            callback(outcome.success, outcome.value)
        except Exception:
            self.logger.exception(
                "Error calling deferred change callback",
                extra={"bridge": self.name, "target": repr(target)},
            )
