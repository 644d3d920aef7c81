"""RabbitMQ broker over aio-pika: one durable priority queue, manual acknowledgements."""

import asyncio
import logging

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPException

from eventbus.broker.base import BrokerMessage
from eventbus.errors import TransportError
from eventbus.models import MAX_PRIORITY

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "event_bus.dispatch"


class AmqpBroker:
    """Durable queue semantics come from RabbitMQ: persistent messages on a durable queue.

    Unacked messages of a dead connection are requeued by the server, so start()
    has nothing to recover locally.
    """

    def __init__(
        self,
        url: str = "amqp://localhost:5672",
        queue_name: str = DEFAULT_QUEUE,
        prefetch_count: int = 16,
        connection_timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._queue_name = queue_name
        self._prefetch_count = prefetch_count
        self._connection_timeout = connection_timeout
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None
        self._inbox: asyncio.Queue[AbstractIncomingMessage] = asyncio.Queue()
        self._requeue_tasks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        try:
            self._connection = await aio_pika.connect_robust(
                self._url, timeout=self._connection_timeout
            )
            self._channel = await self._connection.channel()
            await self._channel.set_qos(prefetch_count=self._prefetch_count)
            self._queue = await self._channel.declare_queue(
                self._queue_name,
                durable=True,
                arguments={"x-max-priority": MAX_PRIORITY},
            )
            self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
        except (AMQPException, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"RabbitMQ unavailable at {self._url}: {e}") from e
        logger.info("Connected to RabbitMQ queue %s", self._queue_name)

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        await self._inbox.put(message)

    async def enqueue(self, message: BrokerMessage) -> None:
        if self._channel is None:
            raise TransportError("RabbitMQ channel not open")
        amqp_message = aio_pika.Message(
            body=message.to_json().encode(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            priority=message.priority,
            message_id=message.event_id,
            correlation_id=message.correlation_id,
        )
        try:
            await self._channel.default_exchange.publish(
                amqp_message, routing_key=self._queue_name
            )
        except (AMQPException, OSError) as e:
            raise TransportError(f"RabbitMQ publish failed for {message.event_id}: {e}") from e

    async def consume(self) -> BrokerMessage:
        incoming = await self._inbox.get()
        return BrokerMessage.from_json(incoming.body, delivery_tag=incoming)

    async def ack(self, message: BrokerMessage) -> None:
        await message.delivery_tag.ack()

    async def nack(self, message: BrokerMessage, delay: float = 0.0) -> None:
        incoming: AbstractIncomingMessage = message.delivery_tag
        if delay <= 0:
            await incoming.nack(requeue=True)
            return

        async def _later() -> None:
            await asyncio.sleep(delay)
            await incoming.nack(requeue=True)

        task = asyncio.create_task(_later())
        self._requeue_tasks.add(task)
        task.add_done_callback(self._requeue_tasks.discard)

    async def check_connection(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def close(self) -> None:
        for task in list(self._requeue_tasks):
            task.cancel()
        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except AMQPException as e:
                logger.warning("Failed to cancel RabbitMQ consumer: %s", e)
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._queue = None
        self._consumer_tag = None
        logger.info("Disconnected from RabbitMQ")
