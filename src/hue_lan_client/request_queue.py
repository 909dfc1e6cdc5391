"""Per-host HTTP request queues serialized by category."""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from .config import DEFAULT_CONTENT_TYPE
from .logging import get_logger, redact_path
from .metrics import observe_request
from .transport import HttpResponse, HttpTransport


class RequestIdCounter:
    """Monotonically increasing request ids; safe to call from any thread."""

    def __init__(self, start: int = 0) -> None:
        self._value = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


@dataclass
class PendingRequest:
    """A request waiting for (or occupying) its category slot."""

    id: int
    verb: str
    path: str
    category: str
    body: Optional[str]
    content_type: str
    timeout: float
    future: "asyncio.Future[Optional[HttpResponse]]"


class RequestQueue:
    """
    Allows one outstanding request per category to a single host.

    Requests in the same category are sent strictly in submission order, one
    at a time; unrelated categories proceed concurrently. Every request
    resolves to an `HttpResponse`, or to ``None`` when no response arrived
    (timeout, connection error, queue closed). Nothing is retried here.
    """

    def __init__(
        self,
        host: str,
        transport: HttpTransport,
        timeout: float = 5.0,
        content_type: str = DEFAULT_CONTENT_TYPE,
        ids: Optional[RequestIdCounter] = None,
    ) -> None:
        self.host = host
        self.secret: Optional[str] = None
        self._transport = transport
        self._default_timeout = timeout
        self._default_type = content_type
        self._ids = ids if ids is not None else RequestIdCounter()
        self._queues: Dict[str, Deque[PendingRequest]] = {}
        self._workers: Dict[str, asyncio.Task[None]] = {}
        self._closed = False
        self.logger = get_logger("hue.requests")

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self, category: Optional[str] = None) -> int:
        """Number of queued requests (including in-flight) for one or all categories."""

        if category is not None:
            return len(self._queues.get(category, ()))
        return sum(len(queue) for queue in self._queues.values())

    def categories(self) -> List[str]:
        return [category for category, queue in self._queues.items() if queue]

    def enqueue(
        self,
        verb: str,
        path: str,
        category: Optional[str] = None,
        body: Optional[str] = None,
        content_type: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> "asyncio.Future[Optional[HttpResponse]]":
        """Queue a request; the returned future is its completion."""

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Optional[HttpResponse]] = loop.create_future()
        if self._closed:
            self.logger.debug("Request dropped; queue closed", extra={"verb": verb})
            future.set_result(None)
            return future

        request = PendingRequest(
            id=self._ids.next(),
            verb=verb.upper(),
            path=path,
            category=category or path,
            body=body,
            content_type=content_type or self._default_type,
            timeout=timeout if timeout is not None else self._default_timeout,
            future=future,
        )
        queue = self._queues.setdefault(request.category, deque())
        queue.append(request)
        self.logger.debug(
            "Request queued",
            extra={
                "request_id": request.id,
                "verb": request.verb,
                "path": redact_path(path, self.secret),
                "category": request.category,
                "depth": len(queue),
            },
        )
        if request.category not in self._workers:
            self._workers[request.category] = loop.create_task(
                self._drain(request.category),
                name=f"hue-requests-{self.host}-{request.category}",
            )
        return future

    def get(self, path: str, category: Optional[str] = None, timeout: Optional[float] = None):
        return self.enqueue("GET", path, category, timeout=timeout)

    def post(
        self,
        path: str,
        body: Optional[str],
        category: Optional[str] = None,
        content_type: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        return self.enqueue("POST", path, category, body, content_type, timeout)

    def put(
        self,
        path: str,
        body: Optional[str],
        category: Optional[str] = None,
        content_type: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        return self.enqueue("PUT", path, category, body, content_type, timeout)

    def delete(self, path: str, category: Optional[str] = None, timeout: Optional[float] = None):
        return self.enqueue("DELETE", path, category, timeout=timeout)

    def close(self) -> None:
        """Cancel in-flight work and resolve everything still queued with ``None``."""

        self._closed = True
        workers = list(self._workers.values())
        self._workers.clear()
        for task in workers:
            task.cancel()
        queues = list(self._queues.values())
        self._queues.clear()
        for queue in queues:
            for request in queue:
                if not request.future.done():
                    request.future.set_result(None)

    async def _drain(self, category: str) -> None:
        queue = self._queues[category]
        try:
            while queue:
                request = queue[0]
                response = await self._dispatch(request)
                queue.popleft()
                if not request.future.done():
                    request.future.set_result(response)
                # Let the completion run before the next request goes out.
                await asyncio.sleep(0)
        finally:
            if self._workers.get(category) is asyncio.current_task():
                del self._workers[category]
            if not queue and self._queues.get(category) is queue:
                del self._queues[category]

    async def _dispatch(self, request: PendingRequest) -> Optional[HttpResponse]:
        url = f"http://{self.host}{request.path}"
        context = {
            "request_id": request.id,
            "verb": request.verb,
            "path": redact_path(request.path, self.secret),
            "category": request.category,
        }
        self.logger.debug("Request started", extra=context)
        started = time.perf_counter()
        result = "ok"
        try:
            response = await asyncio.wait_for(
                self._transport.request(
                    request.verb,
                    url,
                    request.body,
                    request.content_type,
                    request.timeout,
                ),
                timeout=request.timeout,
            )
        except asyncio.TimeoutError:
            result = "timeout"
            self.logger.warning(
                "Request timed out",
                extra={**context, "timeout": request.timeout},
            )
            return None
        except asyncio.CancelledError:
            result = "cancelled"
            raise
        except Exception as exc:
            result = "error"
            self.logger.warning(
                "Request failed",
                extra=context,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            return None
        finally:
            duration = time.perf_counter() - started
            observe_request(request.category, result, duration)
        self.logger.debug(
            "Request finished",
            extra={**context, "status": response.status, "duration": round(duration, 4)},
        )
        return response
