"""Prometheus metrics for purgeman.

Provides counters for the event pipeline and gauges for connection state:
- Messages received, rejected and failing to parse
- Events handled and events whose UUID could not be resolved
- PURGE requests by outcome
- Connection attempts and current state per external connection

Usage:
    from purgeman.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.purge_requests_total.labels(outcome="success").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

# Connection state gauge values
STATE_DISCONNECTED = 0
STATE_CONNECTING = 1
STATE_CONNECTED = 2
STATE_TERMINATING = 3


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    # Pipeline metrics
    messages_received_total: Any = None
    messages_rejected_total: Any = None
    message_parse_errors_total: Any = None
    events_handled_total: Any = None
    events_unresolved_total: Any = None
    purge_requests_total: Any = None

    # Connection metrics
    connection_attempts_total: Any = None
    connection_state: Any = None

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: CollectorRegistry | None = field(default=None, repr=False)

    @property
    def registry(self) -> CollectorRegistry | None:
        return self._registry

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        self._registry = CollectorRegistry()

        self.messages_received_total = Counter(
            "purgeman_messages_received_total",
            "Accepted broker messages",
            ["routing_key"],
            registry=self._registry,
        )

        self.messages_rejected_total = Counter(
            "purgeman_messages_rejected_total",
            "Broker messages with an unrecognized routing key",
            registry=self._registry,
        )

        self.message_parse_errors_total = Counter(
            "purgeman_message_parse_errors_total",
            "Broker messages dropped because the body could not be decoded",
            ["routing_key"],
            registry=self._registry,
        )

        self.events_handled_total = Counter(
            "purgeman_events_handled_total",
            "Change events handed to the purge pipeline",
            ["kind"],
            registry=self._registry,
        )

        self.events_unresolved_total = Counter(
            "purgeman_events_unresolved_total",
            "Change events dropped because no path could be resolved",
            ["kind"],
            registry=self._registry,
        )

        self.purge_requests_total = Counter(
            "purgeman_purge_requests_total",
            "PURGE requests sent to cache targets",
            ["outcome"],
            registry=self._registry,
        )

        self.connection_attempts_total = Counter(
            "purgeman_connection_attempts_total",
            "Connection attempts to external systems",
            ["connection"],
            registry=self._registry,
        )

        self.connection_state = Gauge(
            "purgeman_connection_state",
            "Connection state (0=disconnected, 1=connecting, 2=connected, 3=terminating)",
            ["connection"],
            registry=self._registry,
        )

        self._initialized = True
        logger.debug("Prometheus metrics initialized")

    def reset(self) -> None:
        """Drop all collectors and start over with a fresh registry."""
        self._initialized = False
        self.initialize()


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


def start_metrics_server(port: int) -> None:
    """Expose metrics over HTTP on the given port."""
    metrics = get_metrics()
    start_http_server(port, registry=metrics.registry)
    logger.info(f"Serving metrics on port {port}")


def record_message_received(routing_key: str) -> None:
    get_metrics().messages_received_total.labels(routing_key=routing_key).inc()


def record_message_rejected() -> None:
    get_metrics().messages_rejected_total.inc()


def record_parse_error(routing_key: str) -> None:
    get_metrics().message_parse_errors_total.labels(routing_key=routing_key).inc()


def record_event_handled(kind: str) -> None:
    get_metrics().events_handled_total.labels(kind=kind).inc()


def record_event_unresolved(kind: str) -> None:
    get_metrics().events_unresolved_total.labels(kind=kind).inc()


def record_purge_request(success: bool) -> None:
    outcome = "success" if success else "failure"
    get_metrics().purge_requests_total.labels(outcome=outcome).inc()


def record_connection_attempt(connection: str) -> None:
    get_metrics().connection_attempts_total.labels(connection=connection).inc()


def set_connection_state(connection: str, state: int) -> None:
    """Record connection state.

    Args:
        connection: "amqp" or "irods"
        state: One of the STATE_* constants
    """
    get_metrics().connection_state.labels(connection=connection).set(state)
