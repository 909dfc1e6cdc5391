"""Lights, groups and scenes exposed by a bridge."""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Mapping, Optional, Set

from .coalescer import CompletionCallback, Outcome
from .errors import MalformedResponseError

if TYPE_CHECKING:
    from .bridge import Bridge

# Parameters that are never sent; the bridge derives them from the others.
_DERIVED_PARAMS = {"colormode", "reachable"}


class Target:
    """
    Base class for a light or group known to a bridge.

    Changes made with `set_state` are recorded locally and written through
    the bridge's rate-limited coalescer. While `defer()` is in effect the
    changes accumulate until `submit()` is called.
    """

    api_category = "lights"
    state_key = "state"

    def __init__(self, bridge: "Bridge", id: int, info: Optional[Mapping[str, Any]] = None) -> None:
        self.bridge = bridge
        self.id = int(id)
        self.name: Optional[str] = None
        self.type: Optional[str] = None
        self._changes: Set[str] = set()
        self._defer = False
        self._transitiontime: Optional[int] = None
        self._info: Dict[str, Any] = {self.state_key: {}}
        self.handle_json(info or {})

    @property
    def api_path(self) -> str:
        return f"/{self.api_category}/{self.id}/{self.state_key}"

    def handle_json(self, info: Mapping[str, Any]) -> None:
        """Replace local info with the bridge's JSON, keeping unsent changes."""

        if not isinstance(info, Mapping):
            raise MalformedResponseError(
                f"{type(self).__name__} info must be an object, not {type(info).__name__}"
            )
        updated = copy.deepcopy(dict(info))
        state = updated.get(self.state_key)
        state = dict(state) if isinstance(state, Mapping) else {}
        previous = self._info.get(self.state_key, {})
        for key in self._changes:
            if key in previous:
                state[key] = previous[key]
        updated[self.state_key] = state
        updated["id"] = self.id
        self._info = updated
        self.type = updated.get("type") or self.type
        self.name = updated.get("name") or self.name or f"Lightset {self.id}"

    def to_dict(self) -> Dict[str, Any]:
        """A copy of the last info received from the bridge plus local changes."""

        return copy.deepcopy(self._info)

    @property
    def state(self) -> Dict[str, Any]:
        return dict(self._info[self.state_key])

    def get(self, key: str, default: Any = None) -> Any:
        return self._info[self.state_key].get(key, default)

    @property
    def pending_changes(self) -> FrozenSet[str]:
        return frozenset(self._changes)

    @property
    def deferred(self) -> bool:
        return self._defer

    def set_state(self, **params: Any) -> None:
        """Record parameter changes and submit them unless deferred."""

        state = self._info[self.state_key]
        for key, value in params.items():
            self._changes.add(key)
            state[key] = value
        if not self._defer and params:
            self.submit()

    def defer(self) -> None:
        """Queue changes until `submit` or `nodefer` is called."""

        self._defer = True

    def nodefer(self) -> None:
        """Stop deferring and submit anything already queued."""

        self._defer = False
        if self._changes:
            self.submit()

    @property
    def transitiontime(self) -> Optional[int]:
        return self._transitiontime

    @transitiontime.setter
    def transitiontime(self, value: Optional[float]) -> None:
        # Centiseconds, used for the next write only.
        self._transitiontime = None if value is None else max(0, int(value))

    def submit(self, callback: Optional[CompletionCallback] = None) -> None:
        """Hand this target to the bridge's coalescer."""

        self.bridge.add_target(self, callback)

    @property
    def on(self) -> bool:
        return bool(self.get("on"))

    @on.setter
    def on(self, value: bool) -> None:
        self.set_state(on=bool(value))

    @property
    def bri(self) -> int:
        return int(self.get("bri") or 0)

    @bri.setter
    def bri(self, value: int) -> None:
        self.set_state(bri=min(255, max(0, int(value))))

    def alert(self, repeat: bool = False) -> None:
        self.set_state(alert="lselect" if repeat else "select")

    def build_message(self) -> Dict[str, Any]:
        state = self._info[self.state_key]
        message = {
            key: state[key]
            for key in sorted(self._changes)
            if key not in _DERIVED_PARAMS and key in state
        }
        if self._transitiontime is not None:
            message["transitiontime"] = self._transitiontime
        return message

    async def send_changes(self) -> Outcome:
        """Write every pending change to the bridge in one request."""

        message = self.build_message()
        sent = {key: self._info[self.state_key].get(key) for key in self._changes}
        self._transitiontime = None
        outcome = await self.bridge.put_api(self.api_path, message, self.api_category)
        state = self._info[self.state_key]
        if outcome.success:
            # Keep anything that changed again while the write was in flight.
            for key, value in sent.items():
                if state.get(key) == value:
                    self._changes.discard(key)
        else:
            text = str(outcome.value)
            if "Device is set to off" in text:
                self._changes.discard("alert")
            if "invalid value" in text or "not available" in text:
                self._changes.difference_update(sent)
        return outcome

    async def update(self) -> Outcome:
        """Fetch this target's current state from the bridge."""

        outcome = await self.bridge.get_api(f"/{self.api_category}/{self.id}", self.api_category)
        if outcome.success:
            try:
                self.handle_json(outcome.value)
            except MalformedResponseError as exc:
                return Outcome(False, exc)
        return outcome

    def __str__(self) -> str:
        return f"{type(self).__name__}: {self.id}: {self.name} ({self.type})"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} {self.name!r}>"


class Light(Target):
    """A single light; writes go to ``/lights/<id>/state``."""

    api_category = "lights"
    state_key = "state"


class Group(Target):
    """A group of lights; writes go to ``/groups/<id>/action``."""

    api_category = "groups"
    state_key = "action"

    @property
    def light_ids(self) -> List[int]:
        lights = self._info.get("lights")
        if not isinstance(lights, list):
            return []
        ids = []
        for value in lights:
            try:
                ids.append(int(value))
            except (TypeError, ValueError):
                continue
        return ids

    @property
    def populated(self) -> bool:
        return bool(self._info.get("name")) and isinstance(self._info.get("lights"), list)

    def lights(self) -> List[Light]:
        known = self.bridge.lights
        return [known[light_id] for light_id in self.light_ids if light_id in known]

    def recall_scene(self, scene: "Scene | str", callback: Optional[CompletionCallback] = None) -> None:
        scene_id = scene.id if isinstance(scene, Scene) else str(scene)
        self.set_state(scene=scene_id)
        if callback is not None:
            self.submit(callback)

    def __str__(self) -> str:
        return f"Group: {self.id}: {self.name} ({len(self.light_ids)} lights)"


class Scene:
    """A preset scene; recalling it writes to group 0 (all lights)."""

    api_category = "groups"

    def __init__(self, bridge: "Bridge", id: str, info: Optional[Mapping[str, Any]] = None) -> None:
        self.bridge = bridge
        self.id = str(id)
        self.name: Optional[str] = None
        self._lights: List[int] = []
        self._info: Dict[str, Any] = {}
        self.handle_json(info or {})

    def handle_json(self, info: Mapping[str, Any]) -> None:
        if not isinstance(info, Mapping):
            raise MalformedResponseError("Scene info must be an object")
        updated = copy.deepcopy(dict(info))
        updated["id"] = self.id
        self.name = updated.get("name") or self.name
        lights = updated.get("lights")
        if isinstance(lights, list) and lights:
            self._lights = sorted({int(light) for light in lights if str(light).isdigit()})
        self._info = updated

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._info)

    @property
    def light_ids(self) -> List[int]:
        return list(self._lights)

    def lights(self) -> List[Light]:
        known = self.bridge.lights
        return [known[light_id] for light_id in self._lights if light_id in known]

    def recall(self, callback: Optional[CompletionCallback] = None) -> None:
        """Recall this scene on the next coalescer flush."""

        self.bridge.add_target(self, callback)

    async def send_changes(self) -> Outcome:
        return await self.bridge.put_api("/groups/0/action", {"scene": self.id}, self.api_category)

    def __str__(self) -> str:
        return f"Scene {self.id}: {self.name} ({len(self._lights)} lights)"

    def __repr__(self) -> str:
        return f"<Scene {self.id} {self.name!r}>"
