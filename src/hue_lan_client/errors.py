"""Error taxonomy for bridge discovery and control."""

from __future__ import annotations

from typing import Any, Mapping, Optional

# Hue API error type codes.
ERROR_UNAUTHORIZED = 1
ERROR_LINK_BUTTON = 101


class HueError(Exception):
    """Base class for all client errors."""


class NotVerifiedError(HueError):
    """An operation required a verified bridge."""

    def __init__(self, message: str = "Bridge has not been verified") -> None:
        super().__init__(message)


class TransportError(HueError):
    """No response was received (timeout, refused connection, closed queue)."""

    def __init__(self, message: str = "No response received") -> None:
        super().__init__(message)


class MalformedResponseError(HueError):
    """The bridge returned something that is not the expected JSON shape."""


class BridgeApiError(HueError):
    """An error object returned by the bridge API."""

    def __init__(
        self,
        description: str,
        error_type: Optional[int] = None,
        address: Optional[str] = None,
    ) -> None:
        super().__init__(description)
        self.description = description
        self.error_type = error_type
        self.address = address

    @classmethod
    def from_json(cls, error: Mapping[str, Any]) -> "BridgeApiError":
        """Build the most specific error for a bridge ``{"error": {...}}`` body."""

        try:
            error_type = int(error.get("type"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            error_type = None
        description = str(error.get("description") or "Unknown bridge error")
        address = error.get("address")
        address = str(address) if address is not None else None
        if error_type == ERROR_UNAUTHORIZED:
            return NotRegisteredError(description, error_type, address)
        if error_type == ERROR_LINK_BUTTON:
            return LinkButtonNotPressedError(description, error_type, address)
        return cls(description, error_type, address)


class NotRegisteredError(BridgeApiError):
    """The credential was rejected; the bridge is reachable but not registered."""


class LinkButtonNotPressedError(BridgeApiError):
    """Registration was attempted without pressing the bridge's link button."""


class DiscoveryError(HueError):
    """The SSDP endpoint could not be opened or the query could not be sent."""


class DiscoveryAlreadyRunningError(HueError):
    """``start_discovery`` was called while discovery is already started."""


class DiscoveryNotStartedError(HueError):
    """A discovery cycle was requested before ``start_discovery``."""
