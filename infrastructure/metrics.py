"""Prometheus metrics for the live session sync server.

Metrics:
    mix_mutations_total{operation,transport}  Broker mutations by operation and origin
    mix_compiles_total{result}                Compilations, result=changed|unchanged
    mix_compile_seconds                       Histogram of compile latency
    mix_broadcasts_total{type}                Events fanned out, by message type
    mix_delivery_failures_total               Per-subscriber delivery failures
    mix_subscribers                           Currently connected subscribers

Usage::

    from infrastructure.metrics import record_mutation, record_compile

    record_mutation(operation="put_track", transport="http")
"""

from __future__ import annotations

import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

_REGISTRY = CollectorRegistry()

mutations_total = Counter(
    "mix_mutations_total",
    "Live session mutations by operation and transport",
    ["operation", "transport"],
    registry=_REGISTRY,
)

compiles_total = Counter(
    "mix_compiles_total",
    "Compilations of the live session, by whether the output changed",
    ["result"],
    registry=_REGISTRY,
)

compile_seconds = Histogram(
    "mix_compile_seconds",
    "Compile latency in seconds",
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1],
    registry=_REGISTRY,
)

broadcasts_total = Counter(
    "mix_broadcasts_total",
    "Events fanned out to subscribers, by message type",
    ["type"],
    registry=_REGISTRY,
)

delivery_failures_total = Counter(
    "mix_delivery_failures_total",
    "Messages that could not be queued for a subscriber",
    registry=_REGISTRY,
)

subscribers = Gauge(
    "mix_subscribers",
    "Currently connected subscribers",
    registry=_REGISTRY,
)


def record_mutation(*, operation: str, transport: str) -> None:
    """Record one broker mutation.

    Args:
        operation: Broker operation name, e.g. "put_track".
        transport: "http", "ws" or "internal".
    """
    mutations_total.labels(operation=operation, transport=transport).inc()


def record_compile(*, changed: bool, latency_seconds: float) -> None:
    """Record one compilation and whether it produced new output."""
    compiles_total.labels(result="changed" if changed else "unchanged").inc()
    compile_seconds.observe(latency_seconds)


def record_broadcast(message_type: str) -> None:
    """Increment the broadcast counter for one message type."""
    broadcasts_total.labels(type=message_type).inc()


def record_delivery_failure() -> None:
    """Increment the per-subscriber delivery failure counter."""
    delivery_failures_total.inc()


def set_subscriber_count(count: int) -> None:
    """Set the connected-subscribers gauge."""
    subscribers.set(count)


def get_metrics_response() -> tuple[bytes, str]:
    """Generate Prometheus text exposition format.

    Returns:
        Tuple of (body_bytes, content_type_string).
    """
    return generate_latest(_REGISTRY), CONTENT_TYPE_LATEST


class LatencyTimer:
    """Context manager for measuring latency.

    Usage::

        with LatencyTimer() as t:
            code = compile_mix(tracks, state)
        record_compile(changed=True, latency_seconds=t.elapsed)
    """

    def __init__(self) -> None:
        """Initialize timer."""
        self._start: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> LatencyTimer:
        """Start timing."""
        self._start = time.perf_counter()
        return self

    def __exit__(self, *_: object) -> None:
        """Stop timing and record elapsed."""
        self.elapsed = time.perf_counter() - self._start
