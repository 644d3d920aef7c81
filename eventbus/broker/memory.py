"""In-process priority queue broker for tests and local development. Not durable."""

import asyncio
import heapq
import itertools
import logging

from eventbus.broker.base import BrokerMessage
from eventbus.errors import TransportError

logger = logging.getLogger(__name__)


class MemoryBroker:
    """Highest priority first, FIFO within a priority. Messages are lost on process exit."""

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, BrokerMessage]] = []
        self._seq = itertools.count()
        self._unacked: dict[int, BrokerMessage] = {}
        self._available = asyncio.Event()
        self._delayed: dict[asyncio.TimerHandle, BrokerMessage] = {}
        self._closed = False

    def _push(self, message: BrokerMessage) -> None:
        tag = next(self._seq)
        heapq.heappush(self._heap, (-message.priority, tag, message.with_tag(tag)))
        self._available.set()

    async def start(self) -> None:
        self._closed = False
        if self._unacked:
            for message in list(self._unacked.values()):
                self._push(message)
            logger.info("MemoryBroker: requeued %d unacknowledged messages", len(self._unacked))
            self._unacked.clear()

    async def enqueue(self, message: BrokerMessage) -> None:
        if self._closed:
            raise TransportError("MemoryBroker is closed")
        self._push(message)

    async def consume(self) -> BrokerMessage:
        while not self._heap:
            self._available.clear()
            await self._available.wait()
        _, tag, message = heapq.heappop(self._heap)
        self._unacked[tag] = message
        return message

    async def ack(self, message: BrokerMessage) -> None:
        self._unacked.pop(message.delivery_tag, None)

    async def nack(self, message: BrokerMessage, delay: float = 0.0) -> None:
        if self._unacked.pop(message.delivery_tag, None) is None:
            return
        if delay <= 0:
            self._push(message)
            return
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _requeue() -> None:
            self._delayed.pop(handle, None)
            self._push(message)

        handle = loop.call_later(delay, _requeue)
        self._delayed[handle] = message

    def qsize(self) -> int:
        return len(self._heap)

    async def check_connection(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True
        # Delayed redeliveries go back on the heap so a later start() still sees them.
        for handle, message in list(self._delayed.items()):
            handle.cancel()
            self._push(message)
        self._delayed.clear()
