"""Unit tests for Prometheus metrics."""

from __future__ import annotations

from unittest.mock import patch

from purgeman.observability.metrics import (
    STATE_CONNECTED,
    get_metrics,
    record_connection_attempt,
    set_connection_state,
    start_metrics_server,
)


class TestMetricsRegistry:
    """Test the metrics registry."""

    def test_get_metrics_initializes(self) -> None:
        metrics = get_metrics()

        assert metrics.registry is not None
        assert metrics.purge_requests_total is not None

    def test_reset_starts_from_zero(self) -> None:
        record_connection_attempt("amqp")
        assert get_metrics().registry.get_sample_value(
            "purgeman_connection_attempts_total", {"connection": "amqp"}
        ) == 1.0

        get_metrics().reset()

        assert (
            get_metrics().registry.get_sample_value(
                "purgeman_connection_attempts_total", {"connection": "amqp"}
            )
            is None
        )

    def test_connection_state(self) -> None:
        set_connection_state("irods", STATE_CONNECTED)

        value = get_metrics().registry.get_sample_value(
            "purgeman_connection_state", {"connection": "irods"}
        )
        assert value == STATE_CONNECTED

    def test_start_metrics_server(self) -> None:
        with patch("purgeman.observability.metrics.start_http_server") as mock_server:
            start_metrics_server(9464)

        mock_server.assert_called_once_with(9464, registry=get_metrics().registry)
