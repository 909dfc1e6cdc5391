import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest

from hue_lan_client.config import Config
from hue_lan_client.ssdp import SsdpResponse
from hue_lan_client.transport import HttpResponse

DESCRIPTION_XML = """<?xml version="1.0" encoding="UTF-8" ?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <specVersion><major>1</major><minor>0</minor></specVersion>
  <URLBase>http://{ip}:80/</URLBase>
  <device>
    <deviceType>urn:schemas-upnp-org:device:Basic:1</deviceType>
    <friendlyName>Philips hue ({ip})</friendlyName>
    <manufacturer>Royal Philips Electronics</manufacturer>
    <modelName>Philips hue bridge 2015</modelName>
    <modelNumber>BSB002</modelNumber>
    <serialNumber>{serial}</serialNumber>
    <UDN>uuid:2f402f80-da50-11e1-9b23-{serial}</UDN>
  </device>
</root>
"""


@dataclass
class Call:
    verb: str
    host: str
    path: str
    body: Optional[str]
    content_type: Optional[str]

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


@dataclass
class Route:
    response: Any = None
    delay: float = 0.0
    hang: bool = False
    error: Optional[BaseException] = None


class FakeTransport:
    """In-memory `HttpTransport` keyed by (verb, path)."""

    def __init__(self) -> None:
        self.calls: List[Call] = []
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.active = 0
        self.max_active = 0
        self.closed = False

    def route(
        self,
        verb: str,
        path: str,
        body: Any = None,
        status: int = 200,
        delay: float = 0.0,
        hang: bool = False,
        error: Optional[BaseException] = None,
    ) -> None:
        if callable(body) or isinstance(body, HttpResponse):
            response = body
        elif isinstance(body, str):
            response = HttpResponse(status, body)
        else:
            response = HttpResponse(status, json.dumps(body))
        self.routes[(verb, path)] = Route(response, delay, hang, error)

    def paths(self, verb: Optional[str] = None) -> List[str]:
        return [call.path for call in self.calls if verb is None or call.verb == verb]

    async def request(
        self,
        verb: str,
        url: str,
        body: Optional[str],
        content_type: Optional[str],
        timeout: float,
    ) -> HttpResponse:
        parts = urlsplit(url)
        call = Call(verb, parts.hostname or "", parts.path, body, content_type)
        self.calls.append(call)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            route = self.routes.get((verb, parts.path))
            if route is None:
                return HttpResponse(404, "not found")
            if route.delay:
                await asyncio.sleep(route.delay)
            if route.hang:
                await asyncio.Event().wait()
            if route.error is not None:
                raise route.error
            if callable(route.response):
                return route.response(call)
            return route.response
        finally:
            self.active -= 1

    async def aclose(self) -> None:
        self.closed = True


def hue_state(lights: int = 2, groups: int = 1, scenes: int = 1) -> Dict[str, Any]:
    return {
        "lights": {
            str(i): {
                "name": f"Light {i}",
                "type": "Extended color light",
                "state": {"on": False, "bri": 100, "reachable": True, "colormode": "ct"},
            }
            for i in range(1, lights + 1)
        },
        "groups": {
            str(i): {
                "name": f"Room {i}",
                "lights": [str(n) for n in range(1, lights + 1)],
                "type": "Room",
                "action": {"on": False, "bri": 100},
            }
            for i in range(1, groups + 1)
        },
        "scenes": {
            f"scene{i}": {"name": f"Relax {i}", "lights": [str(n) for n in range(1, lights + 1)]}
            for i in range(1, scenes + 1)
        },
        "config": {"name": "Philips hue", "swversion": "1941132080"},
    }


def install_bridge(
    transport: FakeTransport,
    ip: str = "192.168.1.10",
    serial: str = "001788aabbcc",
    username: str = "user",
    state: Optional[Dict[str, Any]] = None,
) -> None:
    transport.route("GET", "/description.xml", DESCRIPTION_XML.format(ip=ip, serial=serial))
    transport.route("GET", f"/api/{username}", state if state is not None else hue_state())
    transport.route(
        "GET",
        f"/api/{username}/groups/0",
        {"name": "Lightset 0", "lights": ["1", "2"], "type": "LightGroup", "action": {"on": False}},
    )


def unauthorized(path: str) -> List[Dict[str, Any]]:
    return [{"error": {"type": 1, "address": path, "description": "unauthorized user"}}]


def ssdp_response(ip: str, serial: str, location: Optional[str] = None) -> SsdpResponse:
    text = (
        "HTTP/1.1 200 OK\r\n"
        "CACHE-CONTROL: max-age=100\r\n"
        "EXT:\r\n"
        f"LOCATION: {location or f'http://{ip}:80/description.xml'}\r\n"
        "SERVER: Linux/3.14.0 UPnP/1.0 IpBridge/1.41.0\r\n"
        "ST: upnp:rootdevice\r\n"
        f"USN: uuid:2f402f80-da50-11e1-9b23-{serial}::upnp:rootdevice\r\n"
        "\r\n"
    )
    return SsdpResponse.parse(ip, text)


class FakeSearch:
    """Stands in for `SsdpSearch.search`, replaying `responses` each call."""

    def __init__(self) -> None:
        self.responses: List[SsdpResponse] = []
        self.calls = 0
        self.error: Optional[BaseException] = None

    async def __call__(self, service_type, timeout, on_response=None, accept=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        delivered = []
        for response in list(self.responses):
            if accept is not None and not accept(response):
                continue
            delivered.append(response)
            if on_response is not None:
                on_response(response)
        await asyncio.sleep(0)
        return delivered


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise TimeoutError("Condition not met in time")
        await asyncio.sleep(0.005)


def fast_config(**overrides: Any) -> Config:
    values: Dict[str, Any] = {
        "ssdp_timeout": 0.01,
        "discovery_interval": 0.01,
        "discovery_initial_debounce": 0.05,
        "discovery_debounce": 0.02,
        "request_timeout": 0.5,
        "flush_interval": 0.05,
        "subscribe_interval": 0.02,
    }
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def search() -> FakeSearch:
    return FakeSearch()


class Helpers:
    Call = Call
    DESCRIPTION_XML = DESCRIPTION_XML
    FakeTransport = FakeTransport
    install_bridge = staticmethod(install_bridge)
    hue_state = staticmethod(hue_state)
    unauthorized = staticmethod(unauthorized)
    ssdp_response = staticmethod(ssdp_response)
    wait_until = staticmethod(wait_until)
    fast_config = staticmethod(fast_config)


@pytest.fixture
def helpers() -> type:
    return Helpers
