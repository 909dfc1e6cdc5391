"""Barebones asynchronous SSDP search."""

from __future__ import annotations

import asyncio
import re
import socket
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from .errors import DiscoveryError
from .logging import get_logger
from .metrics import record_discovery_error, record_discovery_response

SSDP_ADDR = "239.255.255.250"
SSDP_PORT = 1900

_SERIAL_RE = re.compile(r".*([0-9A-Fa-f]{12})")


def build_search_request(
    service_type: str, timeout: float, address: str = SSDP_ADDR, port: int = SSDP_PORT
) -> bytes:
    """Return the M-SEARCH datagram for `service_type`."""

    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {address}:{port}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {max(1, int(timeout))}\r\n"
        f"ST: {service_type}\r\n"
        "\r\n"
    ).encode("ascii")


@dataclass(frozen=True)
class SsdpResponse:
    """A service that answered an SSDP search."""

    ip: str
    response: str
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, ip: str, text: str) -> "SsdpResponse":
        headers: Dict[str, str] = {}
        for line in text.splitlines()[1:]:
            name, sep, value = line.partition(":")
            if not sep:
                continue
            headers[name.strip().lower()] = value.strip()
        return cls(ip=ip, response=text, headers=headers)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    @property
    def location(self) -> Optional[str]:
        return self.header("location")

    @property
    def usn(self) -> Optional[str]:
        return self.header("usn")

    @property
    def serial(self) -> Optional[str]:
        """The 12-hex-digit hardware serial embedded in the USN header."""

        usn = self.usn
        if not usn:
            return None
        match = _SERIAL_RE.match(usn)
        if match is None:
            return None
        return match.group(1).lower()

    @property
    def is_bridge(self) -> bool:
        location = self.location or ""
        return "description.xml" in location and self.serial is not None

    def __str__(self) -> str:
        lines = "\t".join(self.response.splitlines(keepends=True))
        return f"{self.ip}:\n\t{lines}"


ResponseCallback = Callable[[SsdpResponse], None]
ResponseFilter = Callable[[SsdpResponse], bool]


class SsdpProtocol(asyncio.DatagramProtocol):
    """Collects responses to one M-SEARCH, once per responding address."""

    def __init__(
        self,
        on_response: Optional[ResponseCallback],
        accept: Optional[ResponseFilter] = None,
    ) -> None:
        self.on_response = on_response
        self.accept = accept
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.responses: List[SsdpResponse] = []
        self.logger = get_logger("hue.ssdp")
        self._seen: Set[str] = set()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            self.logger.error(
                "SSDP transport error",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        self.transport = None

    def error_received(self, exc: Exception) -> None:
        record_discovery_error("socket")
        self.logger.warning("SSDP socket error: %s", exc)

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        ip = addr[0]
        if ip in self._seen:
            return
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            record_discovery_error("non_utf8")
            self.logger.debug("Ignoring non-UTF8 SSDP response", extra={"from": addr})
            return
        response = SsdpResponse.parse(ip, text)
        if self.accept is not None and not self.accept(response):
            self.logger.debug("Ignoring non-matching SSDP response", extra={"from": addr})
            return
        self._seen.add(ip)
        self.responses.append(response)
        record_discovery_response("bridge" if response.is_bridge else "other")
        self.logger.debug(
            "Received SSDP response",
            extra={"from": ip, "usn": response.usn, "location": response.location},
        )
        if self.on_response is None:
            return
        try:
            self.on_response(response)
        except Exception:
            self.logger.exception("Error handling SSDP response", extra={"from": ip})


class SsdpSearch:
    """Sends one multicast query per call and reports distinct responders."""

    def __init__(self, address: str = SSDP_ADDR, port: int = SSDP_PORT) -> None:
        self.address = address
        self.port = port
        self.logger = get_logger("hue.ssdp")

    async def search(
        self,
        service_type: str = "ssdp:all",
        timeout: float = 5.0,
        on_response: Optional[ResponseCallback] = None,
        accept: Optional[ResponseFilter] = None,
    ) -> List[SsdpResponse]:
        """
        Search for `service_type` for `timeout` seconds.

        `on_response` is called once per distinct responding address. The
        coroutine returns (end of batch) after the timeout with every
        delivered response. Bind and send failures raise `DiscoveryError`.
        """

        loop = asyncio.get_running_loop()
        payload = build_search_request(service_type, timeout, self.address, self.port)
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: SsdpProtocol(on_response, accept),
                local_addr=("0.0.0.0", 0),
                family=socket.AF_INET,
            )
        except OSError as exc:
            record_discovery_error("bind")
            raise DiscoveryError(f"Unable to open SSDP socket: {exc}") from exc

        try:
            sock = transport.get_extra_info("socket")
            if sock is not None:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            try:
                transport.sendto(payload, (self.address, self.port))
            except OSError as exc:
                record_discovery_error("send")
                raise DiscoveryError(f"Unable to send SSDP query: {exc}") from exc
            self.logger.debug(
                "SSDP query sent",
                extra={"service_type": service_type, "timeout": timeout},
            )
            await asyncio.sleep(timeout)
        finally:
            transport.close()
        return list(protocol.responses)


async def discover(
    service_type: str = "ssdp:all",
    timeout: float = 5.0,
    on_response: Optional[ResponseCallback] = None,
) -> List[SsdpResponse]:
    """Run a single SSDP search on the standard multicast group."""

    return await SsdpSearch().search(service_type, timeout, on_response)
