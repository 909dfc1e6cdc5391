"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

DISCOVERY_RESPONSES = Counter(
    "hue_ssdp_responses_total",
    "SSDP responses delivered to discovery",
    ["kind"],
    registry=_REGISTRY,
)
DISCOVERY_ERRORS = Counter(
    "hue_ssdp_errors_total",
    "SSDP responses or queries that failed",
    ["reason"],
    registry=_REGISTRY,
)
DISCOVERY_CYCLE_DURATION = Histogram(
    "hue_discovery_cycle_duration_seconds",
    "Time from discovery start to the end event",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)
BRIDGE_EVICTIONS = Counter(
    "hue_bridge_evictions_total",
    "Bridges removed from the registry",
    ["reason"],
    registry=_REGISTRY,
)
KNOWN_BRIDGES = Gauge(
    "hue_known_bridges",
    "Bridges currently tracked by the registry",
    registry=_REGISTRY,
)
REQUEST_RESULTS = Counter(
    "hue_requests_total",
    "Bridge HTTP request outcomes",
    ["category", "result"],
    registry=_REGISTRY,
)
REQUEST_DURATION = Histogram(
    "hue_request_duration_seconds",
    "Time spent waiting for bridge HTTP responses",
    ["category", "result"],
    registry=_REGISTRY,
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
COALESCER_FLUSHES = Counter(
    "hue_coalescer_flushes_total",
    "Rate-limited flush cycles",
    registry=_REGISTRY,
)
COALESCER_TARGETS = Histogram(
    "hue_coalescer_targets_per_flush",
    "Targets written per flush cycle",
    registry=_REGISTRY,
    buckets=[1, 2, 4, 8, 16, 32, 64],
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the client metrics."""

    return _REGISTRY


def render_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def record_discovery_response(kind: str) -> None:
    """Record an SSDP response handed to a discovery callback."""

    DISCOVERY_RESPONSES.labels(kind=kind).inc()


def record_discovery_error(reason: str) -> None:
    """Record a discarded SSDP response or failed query."""

    DISCOVERY_ERRORS.labels(reason=reason).inc()


def observe_discovery_cycle(result: str, duration_seconds: float) -> None:
    """Record the duration of a discovery cycle."""

    DISCOVERY_CYCLE_DURATION.labels(result=result).observe(duration_seconds)


def record_bridge_eviction(reason: str) -> None:
    BRIDGE_EVICTIONS.labels(reason=reason).inc()


def set_known_bridges(count: int) -> None:
    KNOWN_BRIDGES.set(count)


def observe_request(category: str, result: str, duration_seconds: float) -> None:
    """Record the outcome and latency of one bridge request."""

    REQUEST_RESULTS.labels(category=category, result=result).inc()
    REQUEST_DURATION.labels(category=category, result=result).observe(duration_seconds)


def observe_flush(target_count: int) -> None:
    """Record a coalescer flush cycle."""

    COALESCER_FLUSHES.inc()
    COALESCER_TARGETS.observe(target_count)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
