"""Connection to a single Hue bridge."""

from __future__ import annotations

import asyncio
import json
import xml.etree.ElementTree as ElementTree
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Type, TypeVar

from .coalescer import CompletionCallback, Flushable, Outcome, RateLimitedCoalescer
from .config import Config
from .errors import (
    BridgeApiError,
    MalformedResponseError,
    NotRegisteredError,
    NotVerifiedError,
    TransportError,
)
from .events import CallbackList
from .logging import get_logger
from .request_queue import RequestIdCounter, RequestQueue
from .scheduler import Scheduler
from .targets import Group, Light, Scene
from .transport import HttpResponse, HttpTransport, HttpxTransport

DESCRIPTION_PATH = "/description.xml"
HUE_MODEL_MARKER = "Philips hue"

# Request categories; one request per category is in flight at a time.
CATEGORY_INFO = "info"
CATEGORY_REGISTRATION = "registration"
CATEGORY_LIGHTS = "lights"
CATEGORY_GROUPS = "groups"

_DESCRIPTION_FIELDS = {
    "friendlyName",
    "manufacturer",
    "modelName",
    "modelNumber",
    "serialNumber",
    "UDN",
}

T = TypeVar("T")


def check_json(response: Optional[HttpResponse]) -> Outcome:
    """Decode a bridge API response into an `Outcome`."""

    if response is None:
        return Outcome(False, TransportError())
    try:
        data = json.loads(response.content)
    except (TypeError, ValueError):
        return Outcome(
            False, MalformedResponseError(f"Invalid JSON from bridge (HTTP {response.status})")
        )
    if isinstance(data, list):
        for item in data:
            if isinstance(item, Mapping) and isinstance(item.get("error"), Mapping):
                return Outcome(False, BridgeApiError.from_json(item["error"]))
    if response.status >= 400:
        return Outcome(False, BridgeApiError(f"HTTP {response.status}"))
    return Outcome(True, data)


def parse_description(content: str) -> Dict[str, str]:
    """Extract the identity fields from a UPnP ``description.xml`` document."""

    try:
        root = ElementTree.fromstring(content)
    except ElementTree.ParseError as exc:
        raise MalformedResponseError(f"Invalid description.xml: {exc}") from exc
    fields: Dict[str, str] = {}
    for element in root.iter():
        tag = element.tag.rsplit("}", 1)[-1]
        if tag in _DESCRIPTION_FIELDS and tag not in fields and element.text:
            fields[tag] = element.text.strip()
    return fields


def _entity_payloads(
    data: Mapping[str, Any], section: str, key_type: Callable[[Any], Any]
) -> Dict[Any, Mapping[str, Any]]:
    payload = data.get(section, {})
    if not isinstance(payload, Mapping):
        raise MalformedResponseError(f"'{section}' must be an object")
    entities: Dict[Any, Mapping[str, Any]] = {}
    for raw_id, info in payload.items():
        if not isinstance(info, Mapping):
            raise MalformedResponseError(f"{section}/{raw_id} must be an object")
        entities[key_type(raw_id)] = info
    return entities


def _success_value(result: Any, key: str) -> Optional[Any]:
    if isinstance(result, list):
        for item in result:
            if isinstance(item, Mapping) and isinstance(item.get("success"), Mapping):
                if key in item["success"]:
                    return item["success"][key]
    return None


class Bridge:
    """
    A Hue bridge reachable at `addr`.

    Every network operation goes through the bridge's `RequestQueue`, and
    every deferred light/group/scene write goes through its
    `RateLimitedCoalescer`. Coroutines return an `Outcome` instead of
    raising; the value is the error instance on failure.
    """

    def __init__(
        self,
        addr: str,
        serial: Optional[str] = None,
        config: Optional[Config] = None,
        transport: Optional[HttpTransport] = None,
        scheduler: Optional[Scheduler] = None,
        bridge_callbacks: Optional[CallbackList] = None,
        ids: Optional[RequestIdCounter] = None,
    ) -> None:
        self.config = config if config is not None else Config()
        self.logger = get_logger("hue.bridge")
        self.scheduler = scheduler if scheduler is not None else Scheduler()
        self._serial = serial.lower() if serial else None
        self._addr = addr
        self._owns_transport = transport is None
        self._transport = transport if transport is not None else HttpxTransport()
        self.requests = RequestQueue(
            addr,
            self._transport,
            timeout=self.config.request_timeout,
            content_type=self.config.request_content_type,
            ids=ids,
        )
        self.coalescer = RateLimitedCoalescer(
            self.config.flush_interval, self.scheduler, name=self._serial or addr
        )
        self.update_callbacks = CallbackList(self.logger, "bridge update")
        if bridge_callbacks is None:
            bridge_callbacks = CallbackList(self.logger, "bridge lifecycle")
        self.bridge_callbacks = bridge_callbacks
        self._verified = False
        self._registered = False
        self._username: Optional[str] = None
        self._description: Dict[str, str] = {}
        self._info: Dict[str, Any] = {}
        self._lights: Dict[int, Light] = {}
        self._groups: Dict[int, Group] = {}
        self._scenes: Dict[str, Scene] = {}
        self._scan_status: Dict[str, Any] = {}
        self._subscription: Optional[asyncio.Task[None]] = None
        self._closed = False

    @property
    def serial(self) -> Optional[str]:
        return self._serial

    @property
    def addr(self) -> str:
        return self._addr

    @addr.setter
    def addr(self, addr: str) -> None:
        if addr == self._addr:
            return
        self.logger.info(
            "Bridge address changed",
            extra={"serial": self._serial, "old": self._addr, "new": addr},
        )
        self._addr = addr
        self.requests.host = addr
        self._verified = False

    @property
    def verified(self) -> bool:
        return self._verified

    @property
    def registered(self) -> bool:
        return self._registered

    @property
    def username(self) -> Optional[str]:
        return self._username

    @username.setter
    def username(self, username: Optional[str]) -> None:
        if username == self._username:
            return
        self._username = username
        self.requests.secret = username
        self._set_registered(False)

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def name(self) -> Optional[str]:
        return self._info.get("name") or self._description.get("friendlyName")

    @property
    def description(self) -> Dict[str, str]:
        return dict(self._description)

    @property
    def info(self) -> Dict[str, Any]:
        """The bridge's ``config`` section from the last refresh."""

        return dict(self._info)

    @property
    def lights(self) -> Dict[int, Light]:
        return dict(self._lights)

    @property
    def groups(self) -> Dict[int, Group]:
        return dict(self._groups)

    @property
    def scenes(self) -> Dict[str, Scene]:
        return dict(self._scenes)

    @property
    def scan_active(self) -> bool:
        return self._scan_status.get("lastscan") == "active"

    @property
    def scan_status(self) -> Dict[str, Any]:
        """The last ``/lights/new`` result: new light IDs plus ``lastscan``."""

        return dict(self._scan_status)

    def find_scene(self, name_or_id: str) -> Optional[Scene]:
        """Find a scene by ID, then exact name, then partial name (case-insensitive)."""

        if name_or_id in self._scenes:
            return self._scenes[name_or_id]
        wanted = name_or_id.strip().lower()
        scenes = sorted(self._scenes.values(), key=lambda scene: scene.id)
        for scene in scenes:
            if (scene.name or "").lower() == wanted:
                return scene
        for scene in scenes:
            if wanted and wanted in (scene.name or "").lower():
                return scene
        return None

    def add_update_callback(self, callback: Callable[[bool, Any], Any]) -> Callable[..., Any]:
        """Call `callback(success, changed_or_error)` after every refresh."""

        return self.update_callbacks.add(callback)

    def remove_update_callback(self, callback: Callable[..., Any]) -> bool:
        return self.update_callbacks.remove(callback)

    def add_target(self, target: Flushable, callback: Optional[CompletionCallback] = None) -> None:
        """Schedule a rate-limited write of `target`'s pending changes."""

        self.coalescer.add_target(target, callback)

    async def verify(self) -> Outcome:
        """Confirm via ``description.xml`` that this address is a Hue bridge."""

        if self._verified:
            return Outcome(True, True)
        response = await self.requests.get(DESCRIPTION_PATH, CATEGORY_INFO)
        if response is None:
            return Outcome(False, TransportError())
        if response.status != 200:
            return Outcome(
                False, MalformedResponseError(f"description.xml returned HTTP {response.status}")
            )
        try:
            description = parse_description(response.content)
        except MalformedResponseError as exc:
            return Outcome(False, exc)
        model = description.get("modelName", "")
        if HUE_MODEL_MARKER.lower() not in model.lower():
            self.logger.debug(
                "Device is not a Hue bridge",
                extra={"addr": self._addr, "model": model},
            )
            return Outcome(False, NotVerifiedError(f"Not a Hue bridge: {model or 'unknown model'}"))
        if self._serial is None and description.get("serialNumber"):
            self._serial = description["serialNumber"].lower()
            self.coalescer.name = self._serial
        self._description = description
        self._verified = True
        self.logger.info(
            "Bridge verified",
            extra={"serial": self._serial, "addr": self._addr, "model": model},
        )
        return Outcome(True, True)

    async def register(self, device_type: Optional[str] = None) -> Outcome:
        """Exchange a device label for a username; press the link button first."""

        if not self._verified:
            return Outcome(False, NotVerifiedError())
        if self._registered:
            return Outcome(True, self._username)
        body = json.dumps({"devicetype": device_type or self.config.device_type})
        response = await self.requests.post("/api", body, CATEGORY_REGISTRATION)
        outcome = check_json(response)
        if not outcome.success:
            return outcome
        username = _success_value(outcome.value, "username")
        if not isinstance(username, str) or not username:
            return Outcome(False, MalformedResponseError("Registration response had no username"))
        # Registered only after the next successful refresh.
        self.username = username
        self.logger.info("Bridge registration accepted", extra={"serial": self._serial})
        return Outcome(True, username)

    async def unregister(self, username: Optional[str] = None) -> Outcome:
        """Revoke `username` (this connection's own username by default)."""

        if not self._verified:
            return Outcome(False, NotVerifiedError())
        own = self._username
        target = username or own
        if not own or not target:
            return Outcome(False, NotRegisteredError("No username to unregister"))
        response = await self.requests.delete(
            f"/api/{own}/config/whitelist/{target}", CATEGORY_REGISTRATION
        )
        outcome = check_json(response)
        if target == own and (outcome.success or isinstance(outcome.value, NotRegisteredError)):
            self.username = None
        return outcome

    async def scan_lights(self, device_ids: Optional[Sequence[str]] = None) -> Outcome:
        """
        Ask the bridge to search for new lights.

        The bridge scans for about a minute. While `scan_active` is true each
        refresh also reads ``/lights/new`` into `scan_status`.
        """

        body = {"deviceid": list(device_ids)} if device_ids else None
        outcome = await self.post_api("/lights", body, CATEGORY_LIGHTS)
        if outcome.success:
            self._scan_status = {"lastscan": "active"}
            self.logger.info("Light scan started", extra={"serial": self._serial})
        return outcome

    async def get_api(self, path: str, category: Optional[str] = None) -> Outcome:
        return await self._api("GET", path, None, category)

    async def put_api(self, path: str, data: Any, category: Optional[str] = None) -> Outcome:
        return await self._api("PUT", path, data, category)

    async def post_api(self, path: str, data: Any, category: Optional[str] = None) -> Outcome:
        return await self._api("POST", path, data, category)

    async def delete_api(self, path: str, category: Optional[str] = None) -> Outcome:
        return await self._api("DELETE", path, None, category)

    async def _api(self, verb: str, path: str, data: Any, category: Optional[str]) -> Outcome:
        if not self._username:
            return Outcome(False, NotRegisteredError("No username set"))
        body = data if data is None or isinstance(data, str) else json.dumps(data)
        response = await self.requests.enqueue(
            verb, f"/api/{self._username}{path}", category or CATEGORY_INFO, body
        )
        return check_json(response)

    async def refresh(self) -> Outcome:
        """
        Fetch the full light/group/scene snapshot.

        The outcome value is True when members were added or removed, False
        when membership is unchanged, or the error on failure. Update
        callbacks receive the same pair.
        """

        try:
            outcome = await self._refresh()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.exception("Unexpected error refreshing bridge", extra={"serial": self._serial})
            outcome = Outcome(False, exc)
        if self._closed:
            return outcome
        if outcome.success:
            self._set_registered(True)
        elif isinstance(outcome.value, NotRegisteredError):
            self._set_registered(False)
        else:
            self.logger.debug(
                "Bridge refresh failed",
                extra={"serial": self._serial, "error": str(outcome.value)},
            )
        self.update_callbacks.notify(outcome.success, outcome.value)
        return outcome

    update = refresh

    async def _refresh(self) -> Outcome:
        if self._closed:
            return Outcome(False, TransportError("Bridge closed"))
        outcome = await self.get_api("", CATEGORY_INFO)
        if not outcome.success:
            return outcome
        data = outcome.value
        if not isinstance(data, Mapping):
            return Outcome(False, MalformedResponseError("Bridge state must be an object"))
        try:
            changed = self._apply_snapshot(data)
        except (MalformedResponseError, TypeError, ValueError) as exc:
            return Outcome(False, MalformedResponseError(f"Unexpected bridge state: {exc}"))

        group0 = self._groups.get(0)
        if group0 is None or not group0.populated:
            result = await self.get_api("/groups/0", CATEGORY_GROUPS)
            if result.success and isinstance(result.value, Mapping):
                if group0 is None:
                    self._groups[0] = Group(self, 0, result.value)
                    changed = True
                else:
                    group0.handle_json(result.value)
            else:
                self.logger.debug(
                    "Unable to load the all-lights group",
                    extra={"serial": self._serial, "error": str(result.value)},
                )
        if self.scan_active:
            await self._refresh_scan()
        return Outcome(True, changed)

    async def _refresh_scan(self) -> None:
        result = await self.get_api("/lights/new", CATEGORY_LIGHTS)
        if result.success and isinstance(result.value, Mapping):
            self._scan_status = dict(result.value)
            if not self.scan_active:
                self.logger.info(
                    "Light scan finished",
                    extra={"serial": self._serial, "lastscan": self._scan_status.get("lastscan")},
                )
        else:
            self.logger.debug(
                "Unable to read light scan status",
                extra={"serial": self._serial, "error": str(result.value)},
            )

    def _apply_snapshot(self, data: Mapping[str, Any]) -> bool:
        # Everything is checked before any entity is touched.
        sections = {
            section: _entity_payloads(data, section, key_type)
            for section, key_type in (("lights", int), ("groups", int), ("scenes", str))
        }
        if "config" in data and not isinstance(data["config"], Mapping):
            raise MalformedResponseError("'config' must be an object")
        lights, lights_changed = self._rebuild(self._lights, sections["lights"], Light)
        groups, groups_changed = self._rebuild(self._groups, sections["groups"], Group)
        scenes, scenes_changed = self._rebuild(self._scenes, sections["scenes"], Scene)
        # Group 0 is never listed in the full state.
        if 0 not in groups and 0 in self._groups:
            groups[0] = self._groups[0]
            groups_changed = set(groups) != set(self._groups)
        self._lights, self._groups, self._scenes = lights, groups, scenes
        self._info = dict(data.get("config", self._info))
        return lights_changed or groups_changed or scenes_changed

    def _rebuild(
        self, current: Dict[Any, T], payload: Dict[Any, Mapping[str, Any]], factory: Type[T]
    ) -> Tuple[Dict[Any, T], bool]:
        updated: Dict[Any, T] = {}
        for key, info in payload.items():
            existing = current.get(key)
            if existing is None:
                updated[key] = factory(self, key, info)  # type: ignore[call-arg]
            else:
                existing.handle_json(info)  # type: ignore[attr-defined]
                updated[key] = existing
        return updated, set(updated) != set(current)

    def _set_registered(self, registered: bool) -> None:
        if registered == self._registered:
            return
        self._registered = registered
        self.logger.info(
            "Bridge is now %s",
            "available" if registered else "unavailable",
            extra={"serial": self._serial, "addr": self._addr},
        )
        self.bridge_callbacks.notify(self, registered)

    def subscribe(self, interval: Optional[float] = None) -> None:
        """Refresh now and then every `interval` seconds until `unsubscribe`."""

        if self._subscription is not None or self._closed:
            return
        period = interval if interval is not None else self.config.subscribe_interval
        if period <= 0:
            raise ValueError("Subscription interval must be positive")
        self._subscription = self.scheduler.spawn(
            self._poll(period), name=f"hue-subscribe-{self._serial or self._addr}"
        )

    def unsubscribe(self) -> None:
        if self._subscription is None:
            return
        self._subscription.cancel()
        self._subscription = None

    async def _poll(self, interval: float) -> None:
        while True:
            started = self.scheduler.time()
            await self.refresh()
            await asyncio.sleep(max(0.0, started + interval - self.scheduler.time()))

    def close(self) -> None:
        """Cancel the subscription, pending writes and queued requests."""

        if self._closed:
            return
        self.unsubscribe()
        self._closed = True
        self.coalescer.close()
        self.requests.close()
        self._set_registered(False)

    async def aclose(self) -> None:
        self.close()
        if self._owns_transport:
            await self._transport.aclose()

    def __str__(self) -> str:
        return f"Hue Bridge: {self._serial}: {self.name} ({self._addr})"

    def __repr__(self) -> str:
        return f"<Bridge serial={self._serial!r} addr={self._addr!r}>"
