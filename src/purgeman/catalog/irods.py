"""iRODS catalog connection.

Wraps a python-irodsclient session. The client is synchronous, so every
call that touches the network runs in a worker thread to keep the event
loop responsive. Reconnection after a dropped connection is handled by
the client's own connection pool.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from irods.exception import iRODSException
from irods.models import Collection, CollectionMeta, DataObject, DataObjectMeta
from irods.session import iRODSSession

from purgeman.errors import CatalogConnectionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    """A data object or collection found in the catalog."""

    path: str
    is_collection: bool = False


class IRODSCatalog:
    """An established connection to the iRODS catalog."""

    def __init__(self, session: iRODSSession, host: str, zone: str) -> None:
        self._session = session
        self.host = host
        self.zone = zone

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        username: str,
        zone: str,
        password: str,
    ) -> IRODSCatalog:
        """Open a session and verify that the server accepts it.

        Raises:
            CatalogConnectionError: If the server is unreachable or rejects
                the credentials.
        """
        logger.info(f"Connecting to iRODS at {host}:{port}")

        def _connect() -> iRODSSession:
            session = iRODSSession(
                host=host,
                port=port,
                user=username,
                password=password,
                zone=zone,
            )
            try:
                # Sessions are lazy, the version handshake forces a login
                session.server_version
            except BaseException:
                session.cleanup()
                raise
            return session

        try:
            session = await asyncio.to_thread(_connect)
        except (iRODSException, OSError) as e:
            raise CatalogConnectionError(f"iRODS {host}:{port}", str(e) or type(e).__name__) from e

        return cls(session, host, zone)

    async def search_by_meta(self, key: str, value: str) -> list[CatalogEntry]:
        """Find data objects and collections carrying the metadata key=value."""
        return await asyncio.to_thread(self._search_by_meta, key, value)

    def _search_by_meta(self, key: str, value: str) -> list[CatalogEntry]:
        entries: list[CatalogEntry] = []

        data_objects = (
            self._session.query(Collection.name, DataObject.name)
            .filter(DataObjectMeta.name == key)
            .filter(DataObjectMeta.value == value)
        )
        for row in data_objects:
            entries.append(CatalogEntry(path=f"{row[Collection.name]}/{row[DataObject.name]}"))

        collections = (
            self._session.query(Collection.name)
            .filter(CollectionMeta.name == key)
            .filter(CollectionMeta.value == value)
        )
        for row in collections:
            entries.append(CatalogEntry(path=row[Collection.name], is_collection=True))

        return entries

    async def release(self) -> None:
        """Close all pooled connections."""
        await asyncio.to_thread(self._session.cleanup)
        logger.info("Released iRODS session")
