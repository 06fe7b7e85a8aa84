"""Connectors for external systems.

- AMQP: consumes iRODS filesystem-change notifications
"""

from purgeman.connectors.amqp import BrokerConfig, BrokerSession, FSEventHandler

__all__ = [
    "BrokerConfig",
    "BrokerSession",
    "FSEventHandler",
]
