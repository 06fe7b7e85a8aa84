"""UUID to path resolution.

Some notifications (data-object.mod) carry only the entity UUID. The path
is found by a metadata lookup on the UUID attribute, and anything other
than exactly one match counts as unresolved.
"""

from __future__ import annotations

import logging
from typing import Callable, Protocol

from purgeman.catalog.irods import CatalogEntry
from purgeman.errors import ResolutionError

logger = logging.getLogger(__name__)

UUID_ATTRIBUTE_DEFAULT = "ipc_UUID"


class Catalog(Protocol):
    """What the resolver needs from a catalog connection."""

    async def search_by_meta(self, key: str, value: str) -> list[CatalogEntry]: ...


class PathResolver:
    """Resolves entity UUIDs to catalog paths.

    The catalog is fetched from ``catalog_provider`` on every call, so the
    resolver follows reconnects and releases made by its owner.
    """

    def __init__(
        self,
        catalog_provider: Callable[[], Catalog | None],
        uuid_attribute: str = UUID_ATTRIBUTE_DEFAULT,
    ) -> None:
        self._catalog_provider = catalog_provider
        self.uuid_attribute = uuid_attribute

    async def resolve(self, entity_id: str) -> str:
        """Return the path of the entity, or "" if it cannot be resolved."""
        catalog = self._catalog_provider()
        if catalog is None:
            logger.error("Failed to resolve UUID, not connected to iRODS")
            return ""

        logger.info(f"Fetching iRODS path from UUID {entity_id}")
        try:
            entries = await catalog.search_by_meta(self.uuid_attribute, entity_id)
        except Exception as e:
            logger.error(f"Failed to search iRODS metadata for UUID {entity_id}: {e}")
            return ""

        try:
            return _single_path(entity_id, entries)
        except ResolutionError as e:
            logger.warning(str(e))
            return ""


def _single_path(entity_id: str, entries: list[CatalogEntry]) -> str:
    if len(entries) != 1:
        raise ResolutionError(entity_id, len(entries))
    return entries[0].path
