"""Observability for purgeman: structured logging and Prometheus metrics."""

from purgeman.observability.logging import LogContext, configure_logging, silence_logging
from purgeman.observability.metrics import get_metrics, start_metrics_server

__all__ = [
    "LogContext",
    "configure_logging",
    "get_metrics",
    "silence_logging",
    "start_metrics_server",
]
