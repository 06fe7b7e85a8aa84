"""Filtering and decoding of broker messages into ChangeEvents.

Routing keys and fields per message type:
- data-object.add, data-object.rm, collection.add, collection.rm:
  ``path`` and ``entity``
- data-object.mv, collection.mv: ``old-path``, ``new-path`` and ``entity``
- data-object.mod: ``entity`` only

Decoding is all-or-nothing per message: a missing or mistyped field drops
the whole message.
"""

from __future__ import annotations

import logging
from typing import Any

import orjson

from purgeman.errors import EventParseError
from purgeman.events.schemas import ChangeEvent, EventKind
from purgeman.observability.metrics import (
    record_message_received,
    record_message_rejected,
    record_parse_error,
)

logger = logging.getLogger(__name__)


class EventFilter:
    """Classifies raw broker messages and decodes accepted ones."""

    def accept(self, routing_key: str) -> bool:
        """Check if the routing key is a recognized filesystem change."""
        return EventKind.from_routing_key(routing_key) is not None

    def filter(self, routing_key: str, body: bytes) -> list[ChangeEvent]:
        """Accept and decode a message in one step.

        Returns an empty list for rejected routing keys and for messages
        that cannot be decoded.
        """
        if not self.accept(routing_key):
            record_message_rejected()
            logger.debug(f"Ignoring message with routing key {routing_key}")
            return []

        record_message_received(routing_key)
        return self.decode(routing_key, body)

    def decode(self, routing_key: str, body: bytes) -> list[ChangeEvent]:
        """Decode the body of an accepted message.

        Errors are logged and turn into an empty result.
        """
        try:
            return self._decode(routing_key, body)
        except EventParseError as e:
            record_parse_error(routing_key)
            logger.error(f"{e} : {body!r}")
            return []

    def _decode(self, routing_key: str, body: bytes) -> list[ChangeEvent]:
        kind = EventKind.from_routing_key(routing_key)
        if kind is None:
            raise EventParseError(routing_key, "unrecognized routing key")

        # The broker occasionally delivers bodies with embedded carriage returns
        if b"\r" in body:
            logger.warning(f"Body with return in it: {body!r}")
            raise EventParseError(routing_key, "body contains a carriage return")

        try:
            payload = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise EventParseError(routing_key, str(e)) from e

        if not isinstance(payload, dict):
            raise EventParseError(routing_key, "body is not a JSON object")

        entity_id = _get_str(payload, "entity", routing_key)

        if kind.is_move:
            old_path = _get_str(payload, "old-path", routing_key)
            new_path = _get_str(payload, "new-path", routing_key)
            return [
                ChangeEvent(kind=kind, path=old_path, entity_id=entity_id),
                ChangeEvent(kind=kind, path=new_path, entity_id=entity_id),
            ]

        if kind == EventKind.OBJECT_MODIFIED:
            # does not have path
            if not entity_id:
                raise EventParseError(routing_key, "field 'entity' is empty")
            return [ChangeEvent(kind=kind, path="", entity_id=entity_id)]

        path = _get_str(payload, "path", routing_key)
        return [ChangeEvent(kind=kind, path=path, entity_id=entity_id)]


def _get_str(payload: dict[str, Any], key: str, routing_key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise EventParseError(routing_key, f"field '{key}' is missing or not a string")
    return value
