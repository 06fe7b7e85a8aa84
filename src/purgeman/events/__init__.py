"""iRODS filesystem-change events.

Broker messages are filtered by routing key and decoded into typed
ChangeEvents, which the service turns into cache purges.
"""

from purgeman.events.filter import EventFilter
from purgeman.events.schemas import ChangeEvent, EventKind

__all__ = [
    "ChangeEvent",
    "EventFilter",
    "EventKind",
]
