"""Discovery registry and lifecycle manager for Hue bridges."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Union,
)

from .bridge import Bridge
from .config import Config
from .errors import (
    DiscoveryAlreadyRunningError,
    DiscoveryError,
    DiscoveryNotStartedError,
    NotRegisteredError,
)
from .events import EVENT_ADD, EVENT_DEL, EVENT_END, EVENT_START, CallbackList
from .logging import get_logger
from .metrics import observe_discovery_cycle, record_bridge_eviction, set_known_bridges
from .request_queue import RequestIdCounter
from .scheduler import Scheduler
from .ssdp import ResponseCallback, ResponseFilter, SsdpResponse, SsdpSearch
from .transport import HttpTransport, HttpxTransport

Credentials = Union[None, str, Mapping[str, str]]
SearchFunc = Callable[
    [str, float, Optional[ResponseCallback], Optional[ResponseFilter]],
    Awaitable[List[SsdpResponse]],
]


@dataclass
class BridgeRecord:
    """Registry bookkeeping for one tracked bridge."""

    bridge: Bridge
    update_callback: Callable[..., Any]
    missing_rounds: int = 0
    error_count: int = 0
    eviction_pending: bool = False


def _is_bridge(response: SsdpResponse) -> bool:
    return response.is_bridge


class BridgeRegistry:
    """
    Tracks Hue bridges found by periodic SSDP discovery.

    A cycle starts with a ``start`` event and a search. Every bridge that
    answers is verified, given its configured username and refreshed; each
    new bridge and each refresh completion pushes back a debounce timer.
    When the timer fires the cycle ends: unseen bridges age, old ones are
    evicted with a ``del`` event, ``end`` is emitted with the changed flag
    (true only when a bridge was added or removed during the cycle) and the
    next cycle is scheduled.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        search: Optional[SearchFunc] = None,
        transport: Optional[HttpTransport] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.config = config if config is not None else Config()
        self.logger = get_logger("hue.discovery")
        self.scheduler = scheduler if scheduler is not None else Scheduler()
        if search is None:
            search = SsdpSearch(self.config.ssdp_address, self.config.ssdp_port).search
        self._search = search
        self._owns_transport = transport is None
        self._transport = transport if transport is not None else HttpxTransport()
        self._ids = RequestIdCounter()
        self._bridges: Dict[str, BridgeRecord] = {}
        self.disco_callbacks = CallbackList(self.logger, "discovery")
        self.bridge_callbacks = CallbackList(self.logger, "bridge lifecycle")
        self._credentials: Credentials = None
        self._interval = self.config.discovery_interval
        self._started = False
        self._running = False
        self._changed = False
        self._cycle_id = 0
        self._cycle_started_at = 0.0
        self._cycle_failed = False
        self._seen: Set[str] = set()
        self._handled: Set[str] = set()
        self._search_task: Optional[asyncio.Task[None]] = None
        self._cycle_tasks: Set[asyncio.Task[Any]] = set()
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._next_cycle: Optional[asyncio.TimerHandle] = None

    # Queries

    @property
    def bridges(self) -> Dict[str, Bridge]:
        return {serial: record.bridge for serial, record in self._bridges.items()}

    def get_bridge(self, serial: str) -> Optional[Bridge]:
        record = self._bridges.get(serial.lower())
        return record.bridge if record else None

    def get_missing_count(self, serial: str) -> Optional[int]:
        record = self._bridges.get(serial.lower())
        return record.missing_rounds if record else None

    def get_error_count(self, serial: str) -> Optional[int]:
        record = self._bridges.get(serial.lower())
        return record.error_count if record else None

    @property
    def discovery_started(self) -> bool:
        return self._started

    @property
    def discovery_running(self) -> bool:
        return self._running

    # Subscriptions

    def add_disco_callback(self, callback: Callable[..., Any]) -> Callable[..., Any]:
        """Call `callback(kind, bridge_or_none, detail)` for discovery events."""

        return self.disco_callbacks.add(callback)

    def remove_disco_callback(self, callback: Callable[..., Any]) -> bool:
        return self.disco_callbacks.remove(callback)

    def add_bridge_callback(self, callback: Callable[..., Any]) -> Callable[..., Any]:
        """Call `callback(bridge, available)` when any bridge gains or loses registration."""

        return self.bridge_callbacks.add(callback)

    def remove_bridge_callback(self, callback: Callable[..., Any]) -> bool:
        return self.bridge_callbacks.remove(callback)

    # Discovery control

    def start_discovery(
        self, credentials: Credentials = None, interval: Optional[float] = None
    ) -> None:
        """Start periodic discovery, applying `credentials` to found bridges."""

        if self._started or self._running:
            raise DiscoveryAlreadyRunningError("Discovery is already running")
        if credentials is not None and not isinstance(credentials, (str, Mapping)):
            raise TypeError("credentials must be a username or a mapping of serial to username")
        if interval is not None and interval <= 0:
            raise ValueError("Discovery interval must be positive")
        if credentials is None:
            credentials = self.config.username
        if isinstance(credentials, Mapping):
            credentials = {str(serial).lower(): user for serial, user in credentials.items()}
        self._credentials = credentials
        self._interval = interval if interval is not None else self.config.discovery_interval
        self._started = True
        self.logger.info("Discovery started", extra={"interval": self._interval})
        self.do_discovery()

    def do_discovery(self) -> None:
        """Start a cycle now; does nothing while one is running."""

        if not self._started:
            raise DiscoveryNotStartedError("Discovery has not been started")
        if self._running:
            self.logger.debug("Discovery cycle already running")
            return
        if self._next_cycle is not None:
            self._next_cycle.cancel()
        self._begin_cycle()

    def stop_discovery(self) -> None:
        """Stop discovery and evict every bridge; subscribers are kept."""

        for handle in (self._next_cycle, self._debounce):
            if handle is not None:
                handle.cancel()
        self._next_cycle = None
        self._debounce = None
        if self._search_task is not None:
            self._search_task.cancel()
            self._search_task = None
        for task in list(self._cycle_tasks):
            task.cancel()
        self._cycle_tasks.clear()
        self._cycle_id += 1

        was_running = self._running
        had_bridges = bool(self._bridges)
        for serial in list(self._bridges):
            self._evict(serial, "Discovery stopped", "stopped")
        if was_running:
            self._notify(EVENT_END, None, had_bridges or self._changed)
        self._running = False
        self._started = False
        self._changed = False
        self._credentials = None
        self.logger.info("Discovery stopped")

    async def discover_once(self, timeout: Optional[float] = None) -> List[Bridge]:
        """Run one search and return the bridges that verified."""

        candidates: Dict[str, Bridge] = {}
        checks: List[asyncio.Task[Any]] = []

        def on_response(response: SsdpResponse) -> None:
            serial = response.serial
            if serial is None or serial in candidates:
                return
            record = self._bridges.get(serial)
            bridge = record.bridge if record else self._new_bridge(response.ip, serial)
            bridge.addr = response.ip
            candidates[serial] = bridge
            checks.append(self.scheduler.spawn(bridge.verify(), name=f"hue-verify-{serial}"))

        await self._search(
            self.config.ssdp_service_type,
            timeout if timeout is not None else self.config.ssdp_timeout,
            on_response,
            _is_bridge,
        )
        outcomes = await asyncio.gather(*checks)
        found = []
        for bridge, outcome in zip(candidates.values(), outcomes):
            if outcome.success:
                found.append(bridge)
            elif not self._tracks(bridge):
                bridge.close()
        return found

    def add_bridge(self, address: str, serial: str, username: Optional[str] = None) -> Bridge:
        """Track a bridge at a known address without waiting for discovery."""

        serial = serial.lower()
        record = self._bridges.get(serial)
        bridge = record.bridge if record else self._new_bridge(address, serial)
        bridge.addr = address
        if username is not None:
            bridge.username = username
        if record is None:
            self._track(bridge)
        return bridge

    async def aclose(self) -> None:
        """Stop discovery and release the shared HTTP transport."""

        self.stop_discovery()
        if self._owns_transport:
            await self._transport.aclose()

    # Cycle internals

    def _begin_cycle(self) -> None:
        self._next_cycle = None
        self._running = True
        self._cycle_failed = False
        self._cycle_id += 1
        self._seen = set()
        self._handled = set()
        self._cycle_started_at = self.scheduler.time()
        self.logger.debug("Discovery cycle started", extra={"cycle": self._cycle_id})
        self._notify(EVENT_START, None, None)
        self._reset_debounce(self.config.discovery_initial_debounce)
        self._search_task = self.scheduler.spawn(
            self._run_search(self._cycle_id), name="hue-discovery-search"
        )

    async def _run_search(self, cycle: int) -> None:
        try:
            await self._search(
                self.config.ssdp_service_type,
                self.config.ssdp_timeout,
                partial(self._handle_response, cycle),
                _is_bridge,
            )
        except DiscoveryError as exc:
            if cycle == self._cycle_id:
                self._cycle_failed = True
            self.logger.warning("Discovery search failed: %s", exc)
        finally:
            if cycle == self._cycle_id:
                self._search_task = None

    def _handle_response(self, cycle: int, response: SsdpResponse) -> None:
        if cycle != self._cycle_id or not self._running:
            return
        serial = response.serial
        if serial is None or serial in self._handled:
            return
        self._handled.add(serial)
        record = self._bridges.get(serial)
        bridge = record.bridge if record else self._new_bridge(response.ip, serial)
        bridge.addr = response.ip
        task = self.scheduler.spawn(self._observe(cycle, bridge), name=f"hue-observe-{serial}")
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)

    async def _observe(self, cycle: int, bridge: Bridge) -> None:
        try:
            outcome = await bridge.verify()
            if cycle != self._cycle_id:
                return
            if not outcome.success:
                self.logger.info(
                    "Ignoring device that failed verification",
                    extra={"addr": bridge.addr, "error": str(outcome.value)},
                )
                return
            self._apply_credentials(bridge)
            self._seen.add(bridge.serial or "")
            if not self._tracks(bridge):
                self._track(bridge)
            record = self._bridges[bridge.serial or ""]
            record.missing_rounds = 0
            self._reset_debounce(self.config.discovery_debounce)
            await bridge.refresh()
            if cycle == self._cycle_id:
                self._reset_debounce(self.config.discovery_debounce)
        finally:
            if not self._tracks(bridge):
                bridge.close()

    def _reset_debounce(self, timeout: float) -> None:
        if not self._running:
            return
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = self.scheduler.call_later(timeout, self._finish_cycle, self._cycle_id)

    def _finish_cycle(self, cycle: int) -> None:
        if cycle != self._cycle_id or not self._running:
            return
        self._debounce = None
        if self._search_task is not None:
            self._search_task.cancel()
            self._search_task = None
        self._age_bridges()
        self._running = False
        changed = self._changed
        self._changed = False
        observe_discovery_cycle(
            "error" if self._cycle_failed else "ok",
            self.scheduler.time() - self._cycle_started_at,
        )
        self.logger.debug(
            "Discovery cycle finished",
            extra={"cycle": cycle, "changed": changed, "bridges": len(self._bridges)},
        )
        self._notify(EVENT_END, None, changed)
        if self._started and not self._running:
            self._next_cycle = self.scheduler.call_later(self._interval, self._scheduled_cycle)

    def _scheduled_cycle(self) -> None:
        self._next_cycle = None
        if self._started and not self._running:
            self._begin_cycle()

    def _age_bridges(self) -> None:
        for serial, record in list(self._bridges.items()):
            if serial in self._seen:
                record.missing_rounds = 0
                continue
            record.missing_rounds += 1
            if record.bridge.subscribed:
                limit = self.config.max_subscribed_age
            else:
                limit = self.config.max_bridge_age
            if record.missing_rounds > limit:
                self._evict(
                    serial,
                    f"Bridge {serial} missing from {record.missing_rounds} rounds of discovery",
                    "missing",
                )

    # Bridge bookkeeping

    def _new_bridge(self, address: str, serial: str) -> Bridge:
        return Bridge(
            address,
            serial,
            config=self.config,
            transport=self._transport,
            scheduler=self.scheduler,
            bridge_callbacks=self.bridge_callbacks,
            ids=self._ids,
        )

    def _tracks(self, bridge: Bridge) -> bool:
        record = self._bridges.get(bridge.serial or "")
        return record is not None and record.bridge is bridge

    def _track(self, bridge: Bridge) -> None:
        serial = bridge.serial or ""
        callback = partial(self._on_bridge_update, bridge)
        bridge.add_update_callback(callback)
        self._bridges[serial] = BridgeRecord(bridge=bridge, update_callback=callback)
        self._changed = True
        set_known_bridges(len(self._bridges))
        self.logger.info("Bridge added", extra={"serial": serial, "addr": bridge.addr})
        self.scheduler.next_tick(self._announce, bridge)

    def _announce(self, bridge: Bridge) -> None:
        if self._tracks(bridge):
            self._notify(EVENT_ADD, bridge, None)

    def _apply_credentials(self, bridge: Bridge) -> None:
        credentials = self._credentials
        if isinstance(credentials, str):
            bridge.username = credentials
        elif isinstance(credentials, Mapping):
            username = credentials.get(bridge.serial or "")
            if username:
                bridge.username = username

    def _on_bridge_update(self, bridge: Bridge, success: bool, result: Any) -> None:
        record = self._bridges.get(bridge.serial or "")
        if record is None or record.bridge is not bridge:
            return
        if success:
            record.error_count = 0
            return
        if isinstance(result, NotRegisteredError):
            return
        record.error_count += 1
        self.logger.debug(
            "Bridge refresh failed",
            extra={"serial": bridge.serial, "errors": record.error_count},
        )
        if record.error_count > self.config.max_bridge_errors and not record.eviction_pending:
            record.eviction_pending = True
            self.scheduler.next_tick(self._evict_failing, bridge)

    def _evict_failing(self, bridge: Bridge) -> None:
        if not self._tracks(bridge):
            return
        serial = bridge.serial or ""
        count = self._bridges[serial].error_count
        self._evict(serial, f"Bridge {serial} failed to update {count} times in a row", "errors")
        if self._started and not self._running:
            self.do_discovery()

    def _evict(self, serial: str, reason: str, metric_reason: str) -> None:
        record = self._bridges.pop(serial, None)
        if record is None:
            return
        bridge = record.bridge
        bridge.remove_update_callback(record.update_callback)
        bridge.unsubscribe()
        self._changed = True
        set_known_bridges(len(self._bridges))
        record_bridge_eviction(metric_reason)
        self.logger.info("Bridge removed", extra={"serial": serial, "reason": reason})
        self._notify(EVENT_DEL, bridge, reason)
        bridge.close()

    def _notify(self, kind: str, bridge: Optional[Bridge], detail: Any) -> None:
        self.disco_callbacks.notify(kind, bridge, detail)
