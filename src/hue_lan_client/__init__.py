"""Hue LAN client - SSDP discovery, bridge registry and rate-limited control."""

from .bridge import Bridge
from .coalescer import Outcome, RateLimitedCoalescer
from .config import Config, load_config
from .registry import BridgeRegistry
from .targets import Group, Light, Scene

__all__ = [
    "Bridge",
    "BridgeRegistry",
    "Config",
    "Group",
    "Light",
    "Outcome",
    "RateLimitedCoalescer",
    "Scene",
    "load_config",
]
__version__ = "1.0.0"
