"""The purgeman service.

Supervises the two external connections and wires the event pipeline:

    AMQP --> EventFilter --> (PathResolver) --> PurgeDispatcher --> Varnish

Two tasks run side by side until the service is destroyed:
- the iRODS task connects once and then leaves reconnection to the
  client's own connection pool
- the AMQP task connects, consumes until the delivery stream fails, then
  disconnects and tries again

Both retry at a fixed interval. All connection handles and the
termination flag live behind one lock; network I/O happens outside it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from purgeman.cache.purge import PurgeDispatcher
from purgeman.catalog.irods import IRODSCatalog
from purgeman.catalog.resolver import Catalog, PathResolver
from purgeman.connectors.amqp import BrokerConfig, BrokerSession
from purgeman.errors import (
    BrokerConnectionError,
    BrokerSessionError,
    CatalogConnectionError,
    ConfigurationError,
)
from purgeman.observability.metrics import (
    STATE_CONNECTED,
    STATE_CONNECTING,
    STATE_DISCONNECTED,
    STATE_TERMINATING,
    record_connection_attempt,
    record_event_handled,
    record_event_unresolved,
    set_connection_state,
)

if TYPE_CHECKING:
    from purgeman.config import Settings

logger = logging.getLogger(__name__)


class ManagedCatalog(Catalog, Protocol):
    async def release(self) -> None: ...


CatalogFactory = Callable[[], Awaitable[ManagedCatalog]]
BrokerFactory = Callable[[], Awaitable[BrokerSession]]


class ServiceState(str, Enum):
    """Lifecycle of the service."""

    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


class ConnectionState(str, Enum):
    """State of one external connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TERMINATING = "terminating"


_STATE_GAUGE = {
    ConnectionState.DISCONNECTED: STATE_DISCONNECTED,
    ConnectionState.CONNECTING: STATE_CONNECTING,
    ConnectionState.CONNECTED: STATE_CONNECTED,
    ConnectionState.TERMINATING: STATE_TERMINATING,
}


@dataclass
class ServiceMetrics:
    """Counters for the service lifecycle and event handling."""

    catalog_connection_attempts: int = 0
    broker_connection_attempts: int = 0
    broker_sessions_lost: int = 0
    events_handled: int = 0
    events_unresolved: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Export metrics as dictionary."""
        return {
            "catalog_connection_attempts": self.catalog_connection_attempts,
            "broker_connection_attempts": self.broker_connection_attempts,
            "broker_sessions_lost": self.broker_sessions_lost,
            "events_handled": self.events_handled,
            "events_unresolved": self.events_unresolved,
        }


class PurgemanService:
    """Keeps Varnish caches consistent with iRODS by purging changed paths."""

    def __init__(
        self,
        settings: Settings,
        catalog_factory: CatalogFactory | None = None,
        broker_factory: BrokerFactory | None = None,
        dispatcher: PurgeDispatcher | None = None,
    ) -> None:
        self.settings = settings
        self.retry_interval = settings.retry_interval
        self._catalog_factory = catalog_factory or self._connect_irods
        self._broker_factory = broker_factory or self._connect_amqp

        self._lock = asyncio.Lock()
        self._terminate = False
        self._terminate_event = asyncio.Event()
        self._state = ServiceState.IDLE
        self._catalog: ManagedCatalog | None = None
        self._catalog_state = ConnectionState.DISCONNECTED
        self._broker: BrokerSession | None = None
        self._broker_state = ConnectionState.DISCONNECTED

        self.dispatcher = dispatcher or PurgeDispatcher(
            settings.cache_targets(),
            settings.irods_username,
            settings.irods_password,
            timeout=settings.purge_timeout,
        )
        self.resolver = PathResolver(lambda: self._catalog, settings.uuid_attribute)
        self.metrics = ServiceMetrics()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def catalog_state(self) -> ConnectionState:
        return self._catalog_state

    @property
    def broker_state(self) -> ConnectionState:
        return self._broker_state

    @property
    def terminating(self) -> bool:
        return self._terminate

    def _set_catalog_state(self, state: ConnectionState) -> None:
        self._catalog_state = state
        set_connection_state("irods", _STATE_GAUGE[state])

    def _set_broker_state(self, state: ConnectionState) -> None:
        self._broker_state = state
        set_connection_state("amqp", _STATE_GAUGE[state])

    def health(self) -> dict[str, Any]:
        """Return service health status."""
        return {
            "state": self._state.value,
            "irods": self._catalog_state.value,
            "amqp": self._broker_state.value,
            "pending_handlers": self._broker.pending_handlers if self._broker else 0,
            "metrics": self.metrics.to_dict(),
        }

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def _connect_irods(self) -> IRODSCatalog:
        s = self.settings
        return await IRODSCatalog.connect(
            s.irods_host, s.irods_port, s.irods_username, s.irods_zone, s.irods_password
        )

    async def _connect_amqp(self) -> BrokerSession:
        return await BrokerSession.connect(
            BrokerConfig.from_settings(self.settings),
            max_concurrent_handlers=self.settings.max_concurrent_handlers,
        )

    async def connect_catalog(self) -> bool:
        """Connect to iRODS unless already connected.

        Returns:
            True when connected, False if the service is terminating.

        Raises:
            CatalogConnectionError: If the connection attempt fails.
        """
        async with self._lock:
            if self._terminate:
                return False
            if self._catalog is not None:
                return True
            self._set_catalog_state(ConnectionState.CONNECTING)

        logger.info("Connecting to iRODS")
        self.metrics.catalog_connection_attempts += 1
        record_connection_attempt("irods")
        try:
            catalog = await self._catalog_factory()
        except CatalogConnectionError:
            async with self._lock:
                if not self._terminate:
                    self._set_catalog_state(ConnectionState.DISCONNECTED)
            raise

        async with self._lock:
            if not self._terminate:
                self._catalog = catalog
                self._set_catalog_state(ConnectionState.CONNECTED)
                return True

        # destroyed while connecting
        await catalog.release()
        return False

    async def connect_broker(self) -> BrokerSession | None:
        """Connect to the AMQP broker unless already connected.

        Returns:
            The session, or None if the service is terminating.

        Raises:
            BrokerConnectionError: If the connection attempt fails.
        """
        async with self._lock:
            if self._terminate:
                return None
            if self._broker is not None:
                return self._broker
            self._set_broker_state(ConnectionState.CONNECTING)

        logger.info("Connecting to iRODS Message Queue")
        self.metrics.broker_connection_attempts += 1
        record_connection_attempt("amqp")
        try:
            session = await self._broker_factory()
        except BrokerConnectionError:
            async with self._lock:
                if not self._terminate:
                    self._set_broker_state(ConnectionState.DISCONNECTED)
            raise

        async with self._lock:
            if not self._terminate:
                self._broker = session
                self._set_broker_state(ConnectionState.CONNECTED)
                return session

        # destroyed while connecting
        await session.disconnect()
        return None

    async def connect(self) -> None:
        """Connect to iRODS and the broker once, without retrying.

        Used at startup so that unreachable systems are reported to the
        operator instead of being retried silently.
        """
        async with self._lock:
            if self._terminate:
                return
            self._state = ServiceState.CONNECTING

        await self.connect_catalog()
        await self.connect_broker()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Run until the service is destroyed.

        Raises:
            ConfigurationError: If the broker session cannot pick a queue.
        """
        async with self._lock:
            if self._terminate:
                return
            self._state = ServiceState.RUNNING

        logger.info("Starting the purgeman service")
        await asyncio.gather(self._run_catalog(), self._run_broker())

    async def _run_catalog(self) -> None:
        while not self._terminate:
            try:
                if not await self.connect_catalog():
                    return
                # now connected to iRODS.
                # if disconnected for any reason, the iRODS connection pool will handle it
                return
            except CatalogConnectionError as e:
                logger.error(f"Failed to connect to iRODS, retry after {self.retry_interval}s: {e}")

            await self._wait_retry()

    async def _run_broker(self) -> None:
        while not self._terminate:
            try:
                session = await self.connect_broker()
            except BrokerConnectionError as e:
                logger.error(
                    f"Failed to connect to MessageQueue, retry after {self.retry_interval}s: {e}"
                )
                await self._wait_retry()
                continue

            if session is None:
                return

            try:
                # will not return until it fails to receive messages
                await session.consume(self.handle_event)
            except ConfigurationError as e:
                logger.error(f"Cannot consume messages: {e}")
                await self.destroy()
                raise
            except BrokerSessionError as e:
                logger.error(str(e))
            except Exception as e:
                logger.exception(f"Unexpected error while consuming messages: {e}")

            async with self._lock:
                if self._broker is session:
                    self._broker = None
                    self._set_broker_state(ConnectionState.DISCONNECTED)
                terminating = self._terminate
            await session.disconnect()

            # is the failure due to termination?
            if terminating:
                return

            self.metrics.broker_sessions_lost += 1
            logger.error(f"Lost MessageQueue session, reconnect after {self.retry_interval}s")
            await self._wait_retry()

    async def _wait_retry(self) -> None:
        """Sleep for the retry interval, waking up early on termination."""
        try:
            await asyncio.wait_for(self._terminate_event.wait(), timeout=self.retry_interval)
        except TimeoutError:
            pass

    async def destroy(self) -> None:
        """Stop the service and release both connections.

        Safe to call more than once and while ``start()`` is running.
        """
        async with self._lock:
            if self._terminate:
                # already terminated
                return

            self._terminate = True
            self._terminate_event.set()
            self._state = ServiceState.TERMINATING
            catalog, self._catalog = self._catalog, None
            broker, self._broker = self._broker, None
            self._set_catalog_state(ConnectionState.TERMINATING)
            self._set_broker_state(ConnectionState.TERMINATING)

        logger.info("Destroying the purgeman service")

        if catalog is not None:
            try:
                await catalog.release()
            except Exception as e:
                logger.warning(f"Error releasing iRODS session: {e}")

        if broker is not None:
            await broker.disconnect()

        await self.dispatcher.aclose()

        async with self._lock:
            self._state = ServiceState.TERMINATED
            self._set_catalog_state(ConnectionState.DISCONNECTED)
            self._set_broker_state(ConnectionState.DISCONNECTED)

    # -------------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------------

    async def handle_event(self, event_type: str, path: str, uuid: str) -> None:
        """Purge the cache for one filesystem event.

        Events without a path are resolved through their UUID first.
        Unresolvable events are dropped.
        """
        irods_path = path
        if not path and uuid:
            # conv uuid to path
            irods_path = await self.resolver.resolve(uuid)

        if not irods_path:
            self.metrics.events_unresolved += 1
            record_event_unresolved(event_type)
            logger.info(f"Received a {event_type} event on file UUID {uuid}, but could not resolve")
            return

        self.metrics.events_handled += 1
        record_event_handled(event_type)
        logger.info(f"Received a {event_type} event on file {irods_path}")
        await self.dispatcher.purge(irods_path)
