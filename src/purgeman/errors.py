"""Error taxonomy for purgeman.

Only configuration problems and startup failures reach the operator.
Everything raised on the data plane (parse errors, unresolved UUIDs,
per-target purge failures, lost connections) is recovered locally by
dropping the message or retrying the connection.
"""

from __future__ import annotations


class PurgemanError(Exception):
    """Base class for purgeman errors."""


class ConfigurationError(PurgemanError):
    """Raised when a required configuration value is missing or invalid.

    Fatal, never retried.
    """


class PurgemanConnectionError(PurgemanError):
    """Raised when an external system cannot be reached or rejects credentials."""

    def __init__(self, target: str, reason: str = "") -> None:
        self.target = target
        self.reason = reason
        message = f"Could not connect to {target}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class BrokerConnectionError(PurgemanConnectionError):
    """Raised when the AMQP broker is unreachable."""


class CatalogConnectionError(PurgemanConnectionError):
    """Raised when the iRODS catalog is unreachable."""


class BrokerSessionError(PurgemanError):
    """Raised when the consume loop of a broker session ends."""


class EventParseError(PurgemanError):
    """Raised when a broker message body cannot be decoded into events."""

    def __init__(self, routing_key: str, reason: str) -> None:
        self.routing_key = routing_key
        self.reason = reason
        super().__init__(f"Failed to parse message body - {routing_key}: {reason}")


class ResolutionError(PurgemanError):
    """Raised when a UUID does not map to exactly one catalog entry."""

    def __init__(self, entity_id: str, matches: int) -> None:
        self.entity_id = entity_id
        self.matches = matches
        super().__init__(f"UUID {entity_id} matched {matches} catalog entries")


class PurgeRequestError(PurgemanError):
    """Raised for a failed PURGE request against a single cache target."""

    def __init__(self, url: str, host: str, reason: str) -> None:
        self.url = url
        self.host = host
        self.reason = reason
        super().__init__(f"PURGE request to url '{url}' for host '{host}' failed - {reason}")


class DaemonStartupError(PurgemanError):
    """Raised by the parent when the background process fails to start."""
