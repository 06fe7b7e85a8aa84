"""Event schemas for iRODS filesystem-change notifications.

The iRODS audit plugin publishes one AMQP message per filesystem change,
labelled by routing key. Each accepted message becomes one or two
ChangeEvents.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EventKind(str, Enum):
    """Kind of filesystem change, valued by its routing key."""

    OBJECT_ADDED = "data-object.add"
    OBJECT_MODIFIED = "data-object.mod"
    OBJECT_MOVED = "data-object.mv"
    OBJECT_REMOVED = "data-object.rm"
    COLLECTION_ADDED = "collection.add"
    COLLECTION_MOVED = "collection.mv"
    COLLECTION_REMOVED = "collection.rm"

    @classmethod
    def from_routing_key(cls, routing_key: str) -> EventKind | None:
        """Return the kind for a routing key, or None if not recognized."""
        try:
            return cls(routing_key)
        except ValueError:
            return None

    @property
    def is_move(self) -> bool:
        return self in (EventKind.OBJECT_MOVED, EventKind.COLLECTION_MOVED)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A parsed filesystem change.

    An empty path means the message type carries no path (data-object.mod)
    and the path has to be resolved from the entity UUID.
    """

    kind: EventKind
    path: str = ""
    entity_id: str = ""

    @property
    def needs_resolution(self) -> bool:
        return not self.path and bool(self.entity_id)
