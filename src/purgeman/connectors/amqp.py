"""AMQP session for the iRODS message queue.

The iRODS audit plugin publishes filesystem changes to an exchange. The
session either consumes a named queue or, when only an exchange is
configured, declares a temporary server-named queue bound with "#":

    exchange "irods" --#--> amq.gen-XXXX (auto-delete) --> consumer (auto-ack)

Every accepted message is decoded and handed to the event handler in its
own task, so a slow purge never stalls delivery.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable
from urllib.parse import quote

import aio_pika

from purgeman.errors import BrokerConnectionError, BrokerSessionError, ConfigurationError
from purgeman.events.filter import EventFilter
from purgeman.events.schemas import ChangeEvent
from purgeman.observability.logging import LogContext

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractQueue

    from purgeman.config import Settings

logger = logging.getLogger(__name__)

# Handler for file system events: (routing key, path, uuid)
FSEventHandler = Callable[[str, str, str], Awaitable[None]]

BIND_ALL_ROUTING_KEY = "#"


@dataclass
class BrokerConfig:
    """Configuration for the AMQP connection."""

    host: str
    port: int = 5672
    vhost: str = "/"
    username: str = ""
    password: str = ""
    exchange: str = ""  # can be empty
    queue: str = ""  # can be empty

    @classmethod
    def from_settings(cls, settings: Settings) -> BrokerConfig:
        return cls(
            host=settings.amqp_host,
            port=settings.amqp_port,
            vhost=settings.amqp_vhost,
            username=settings.amqp_username,
            password=settings.amqp_password,
            exchange=settings.amqp_exchange,
            queue=settings.amqp_queue,
        )

    def url(self) -> str:
        username = quote(self.username, safe="")
        password = quote(self.password, safe="")
        vhost = quote(self.vhost, safe="")
        return f"amqp://{username}:{password}@{self.host}:{self.port}/{vhost}"


class BrokerSession:
    """One connection and one channel to the broker."""

    def __init__(
        self,
        config: BrokerConfig,
        connection: AbstractConnection,
        channel: AbstractChannel,
        event_filter: EventFilter | None = None,
        max_concurrent_handlers: int = 0,
    ) -> None:
        self.config = config
        self.event_filter = event_filter or EventFilter()
        self.queue_name = config.queue
        self._connection: AbstractConnection | None = connection
        self._channel: AbstractChannel | None = channel
        self._monitoring = True
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._handler_slots = (
            asyncio.Semaphore(max_concurrent_handlers) if max_concurrent_handlers > 0 else None
        )

    @classmethod
    async def connect(
        cls,
        config: BrokerConfig,
        event_filter: EventFilter | None = None,
        max_concurrent_handlers: int = 0,
    ) -> BrokerSession:
        """Dial the broker and open a channel.

        Raises:
            BrokerConnectionError: If the broker is unreachable or the
                channel cannot be opened.
        """
        target = f"{config.host}:{config.port}"
        logger.info(f"Connecting to {target}")

        try:
            connection = await aio_pika.connect(config.url())
        except Exception as e:
            logger.error(f"Could not connect to {target}: {e}")
            raise BrokerConnectionError(f"AMQP {target}", str(e)) from e

        try:
            channel = await connection.channel()
        except Exception as e:
            logger.error(f"Could not open a channel: {e}")
            await connection.close()
            raise BrokerConnectionError(f"AMQP {target}", f"could not open a channel: {e}") from e

        return cls(
            config,
            connection,
            channel,
            event_filter=event_filter,
            max_concurrent_handlers=max_concurrent_handlers,
        )

    @property
    def monitoring(self) -> bool:
        return self._monitoring

    @property
    def pending_handlers(self) -> int:
        """Number of handler tasks still running."""
        return len(self._handler_tasks)

    async def consume(self, handler: FSEventHandler) -> None:
        """Consume filesystem events until stopped or the stream fails.

        Returns normally after ``disconnect()``.

        Raises:
            ConfigurationError: If neither queue nor exchange is configured.
            BrokerSessionError: If the delivery stream closes or fails.
        """
        channel = self._channel
        if channel is None:
            raise BrokerSessionError("session is disconnected")

        queue = await self._resolve_queue(channel)

        while self._monitoring:
            try:
                async with queue.iterator(no_ack=True, exclusive=False) as messages:
                    logger.info(f"Consuming messages from queue {self.queue_name}")
                    async for message in messages:
                        await self._dispatch(message.routing_key or "", message.body, handler)
                        if not self._monitoring:
                            break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._monitoring:
                    return
                logger.error(f"Failed to consume from queue {self.queue_name}: {e}")
                raise BrokerSessionError(f"consumer on queue {self.queue_name} failed: {e}") from e

            if self._monitoring and channel.is_closed:
                raise BrokerSessionError(f"delivery stream of queue {self.queue_name} closed")

    async def _resolve_queue(self, channel: AbstractChannel) -> AbstractQueue:
        if self.config.queue:
            return await channel.get_queue(self.config.queue, ensure=False)

        if not self.config.exchange:
            raise ConfigurationError("no queue or exchange given")

        try:
            # auto generate name
            queue = await channel.declare_queue(durable=False, auto_delete=True)
            await queue.bind(self.config.exchange, routing_key=BIND_ALL_ROUTING_KEY)
        except Exception as e:
            logger.error(f"Could not declare and bind a queue to {self.config.exchange}: {e}")
            raise BrokerSessionError(f"could not set up a queue: {e}") from e

        self.queue_name = queue.name
        logger.info(f"Bound queue {queue.name} to exchange {self.config.exchange}")
        return queue

    async def _dispatch(self, routing_key: str, body: bytes, handler: FSEventHandler) -> None:
        events = self.event_filter.filter(routing_key, body)
        if not events:
            return

        if self._handler_slots is not None:
            await self._handler_slots.acquire()

        task = asyncio.create_task(self._handle_events(events, handler))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _handle_events(self, events: list[ChangeEvent], handler: FSEventHandler) -> None:
        try:
            # events of one message keep their order (old path before new path)
            for event in events:
                with LogContext(routing_key=event.kind.value, entity_id=event.entity_id):
                    try:
                        await handler(event.kind.value, event.path, event.entity_id)
                    except Exception as e:
                        logger.error(f"Error handling {event.kind.value} event: {e}")
        finally:
            if self._handler_slots is not None:
                self._handler_slots.release()

    async def disconnect(self) -> None:
        """Stop consuming and close channel and connection.

        Safe to call more than once and from any task.
        """
        self._monitoring = False

        channel, self._channel = self._channel, None
        connection, self._connection = self._connection, None

        if channel is not None and not channel.is_closed:
            try:
                await channel.close()
            except Exception as e:
                logger.warning(f"Error closing AMQP channel: {e}")

        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"Error closing AMQP connection: {e}")
