"""Tests for broker adapters: outbox (durable), memory, AMQP with a fake aio-pika connection."""

import asyncio
import json
from pathlib import Path
from typing import Any

import aio_pika
import pytest

from eventbus.broker import BrokerAdapter, BrokerMessage, MemoryBroker, OutboxBroker
from eventbus.broker import amqp as amqp_module
from eventbus.broker.amqp import AmqpBroker
from eventbus.errors import TransportError


@pytest.fixture
def outbox_path(tmp_path: Path) -> Path:
    return tmp_path / "outbox.db"


@pytest.fixture
async def outbox(outbox_path: Path) -> OutboxBroker:
    broker = OutboxBroker(outbox_path, poll_interval=0.05)
    await broker.start()
    yield broker
    await broker.close()


def test_adapters_satisfy_protocol(outbox_path: Path) -> None:
    assert isinstance(MemoryBroker(), BrokerAdapter)
    assert isinstance(OutboxBroker(outbox_path), BrokerAdapter)
    assert isinstance(AmqpBroker(), BrokerAdapter)


def test_message_json_omits_delivery_tag() -> None:
    message = BrokerMessage("e1", priority=7, correlation_id="c1", delivery_round=2, replay=True)
    tagged = message.with_tag(42)
    assert json.loads(tagged.to_json()) == {
        "event_id": "e1",
        "priority": 7,
        "correlation_id": "c1",
        "delivery_round": 2,
        "target_service": None,
        "replay": True,
    }
    assert BrokerMessage.from_json(tagged.to_json(), delivery_tag=1) == message


class TestOutboxBroker:
    """SQLite outbox: priority order, leases, redelivery across restart."""

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, outbox: OutboxBroker) -> None:
        await outbox.enqueue(BrokerMessage("low", priority=1))
        await outbox.enqueue(BrokerMessage("high-1", priority=9))
        await outbox.enqueue(BrokerMessage("high-2", priority=9))
        order = [(await outbox.consume()).event_id for _ in range(3)]
        assert order == ["high-1", "high-2", "low"]

    @pytest.mark.asyncio
    async def test_ack_removes_from_pending(self, outbox: OutboxBroker) -> None:
        await outbox.enqueue(BrokerMessage("e1"))
        message = await outbox.consume()
        assert await outbox.pending_count() == 1
        await outbox.ack(message)
        assert await outbox.pending_count() == 0

    @pytest.mark.asyncio
    async def test_nack_with_delay_redelivers_later(self, outbox: OutboxBroker) -> None:
        await outbox.enqueue(BrokerMessage("e1"))
        message = await outbox.consume()
        await outbox.nack(message, delay=0.2)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(outbox.consume(), timeout=0.05)
        again = await asyncio.wait_for(outbox.consume(), timeout=2.0)
        assert again.event_id == "e1"

    @pytest.mark.asyncio
    async def test_consume_wakes_on_enqueue(self, outbox: OutboxBroker) -> None:
        waiter = asyncio.create_task(outbox.consume())
        await asyncio.sleep(0.01)
        await outbox.enqueue(BrokerMessage("e1"))
        message = await asyncio.wait_for(waiter, timeout=2.0)
        assert message.event_id == "e1"

    @pytest.mark.asyncio
    async def test_unacked_messages_survive_restart(self, outbox_path: Path) -> None:
        first = OutboxBroker(outbox_path, poll_interval=0.05)
        await first.start()
        await first.enqueue(BrokerMessage("claimed"))
        await first.enqueue(BrokerMessage("pending"))
        await first.consume()
        await first.close()

        second = OutboxBroker(outbox_path, poll_interval=0.05)
        await second.start()
        ids = {(await second.consume()).event_id for _ in range(2)}
        assert ids == {"claimed", "pending"}
        await second.close()

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, outbox_path: Path) -> None:
        broker = OutboxBroker(outbox_path, poll_interval=0.05, lease_timeout=0.0)
        await broker.start()
        await broker.enqueue(BrokerMessage("e1"))
        first = await broker.consume()
        await asyncio.sleep(0.01)
        second = await asyncio.wait_for(broker.consume(), timeout=2.0)
        assert first.event_id == second.event_id == "e1"
        await broker.close()

    @pytest.mark.asyncio
    async def test_unreachable_outbox_raises_transport_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        broker = OutboxBroker(blocker / "outbox.db")
        with pytest.raises(TransportError):
            await broker.enqueue(BrokerMessage("e1"))
        assert await broker.check_connection() is False


class TestMemoryBroker:
    """In-process broker used by tests and local runs."""

    @pytest.mark.asyncio
    async def test_priority_order(self) -> None:
        broker = MemoryBroker()
        await broker.enqueue(BrokerMessage("a", priority=2))
        await broker.enqueue(BrokerMessage("b", priority=10))
        await broker.enqueue(BrokerMessage("c", priority=2))
        assert [(await broker.consume()).event_id for _ in range(3)] == ["b", "a", "c"]

    @pytest.mark.asyncio
    async def test_start_requeues_unacked(self) -> None:
        broker = MemoryBroker()
        await broker.enqueue(BrokerMessage("a"))
        await broker.consume()
        assert broker.qsize() == 0
        await broker.start()
        assert broker.qsize() == 1

    @pytest.mark.asyncio
    async def test_close_keeps_delayed_messages(self) -> None:
        broker = MemoryBroker()
        await broker.enqueue(BrokerMessage("a"))
        message = await broker.consume()
        await broker.nack(message, delay=60)
        assert broker.qsize() == 0
        await broker.close()
        assert broker.qsize() == 1
        assert await broker.check_connection() is False
        with pytest.raises(TransportError):
            await broker.enqueue(BrokerMessage("b"))


# --- AMQP with a fake aio-pika connection ---


class _FakeExchange:
    def __init__(self) -> None:
        self.published: list[tuple[aio_pika.Message, str]] = []

    async def publish(self, message: aio_pika.Message, routing_key: str) -> None:
        self.published.append((message, routing_key))


class _FakeQueue:
    def __init__(self) -> None:
        self.callback: Any = None
        self.cancelled = False

    async def consume(self, callback: Any, no_ack: bool = False) -> str:
        assert no_ack is False
        self.callback = callback
        return "ctag-1"

    async def cancel(self, consumer_tag: str) -> None:
        self.cancelled = True


class _FakeChannel:
    def __init__(self) -> None:
        self.default_exchange = _FakeExchange()
        self.queue = _FakeQueue()
        self.qos: int | None = None
        self.declared: dict[str, Any] = {}

    async def set_qos(self, prefetch_count: int) -> None:
        self.qos = prefetch_count

    async def declare_queue(self, name: str, durable: bool, arguments: dict) -> _FakeQueue:
        self.declared = {"name": name, "durable": durable, "arguments": arguments}
        return self.queue


class _FakeConnection:
    def __init__(self) -> None:
        self.channel_obj = _FakeChannel()
        self.is_closed = False

    async def channel(self) -> _FakeChannel:
        return self.channel_obj

    async def close(self) -> None:
        self.is_closed = True


class _FakeIncoming:
    def __init__(self, body: bytes) -> None:
        self.body = body
        self.acked = False
        self.requeued = False

    async def ack(self) -> None:
        self.acked = True

    async def nack(self, requeue: bool = True) -> None:
        self.requeued = requeue


@pytest.fixture
def fake_connection(monkeypatch: pytest.MonkeyPatch) -> _FakeConnection:
    connection = _FakeConnection()

    async def _connect_robust(url: str, timeout: float) -> _FakeConnection:
        return connection

    monkeypatch.setattr(amqp_module.aio_pika, "connect_robust", _connect_robust)
    return connection


class TestAmqpBroker:
    """Queue setup, persistent publish, manual ack."""

    @pytest.mark.asyncio
    async def test_start_declares_durable_priority_queue(
        self, fake_connection: _FakeConnection
    ) -> None:
        broker = AmqpBroker(url="amqp://rabbit", queue_name="q", prefetch_count=4)
        await broker.start()
        channel = fake_connection.channel_obj
        assert channel.qos == 4
        assert channel.declared == {
            "name": "q",
            "durable": True,
            "arguments": {"x-max-priority": 10},
        }
        assert await broker.check_connection() is True
        await broker.close()
        assert channel.queue.cancelled is True
        assert fake_connection.is_closed is True

    @pytest.mark.asyncio
    async def test_enqueue_publishes_persistent_message(
        self, fake_connection: _FakeConnection
    ) -> None:
        broker = AmqpBroker(queue_name="q")
        await broker.start()
        await broker.enqueue(BrokerMessage("e1", priority=9, correlation_id="c1"))

        [(message, routing_key)] = fake_connection.channel_obj.default_exchange.published
        assert routing_key == "q"
        assert message.priority == 9
        assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
        assert json.loads(message.body)["event_id"] == "e1"
        await broker.close()

    @pytest.mark.asyncio
    async def test_consume_ack_and_nack(self, fake_connection: _FakeConnection) -> None:
        broker = AmqpBroker()
        await broker.start()
        callback = fake_connection.channel_obj.queue.callback

        first = _FakeIncoming(BrokerMessage("e1").to_json().encode())
        second = _FakeIncoming(BrokerMessage("e2").to_json().encode())
        await callback(first)
        await callback(second)

        m1 = await broker.consume()
        await broker.ack(m1)
        m2 = await broker.consume()
        await broker.nack(m2)
        assert (m1.event_id, first.acked) == ("e1", True)
        assert (m2.event_id, second.requeued) == ("e2", True)
        await broker.close()

    @pytest.mark.asyncio
    async def test_enqueue_before_start_raises(self) -> None:
        with pytest.raises(TransportError):
            await AmqpBroker().enqueue(BrokerMessage("e1"))

    @pytest.mark.asyncio
    async def test_unreachable_server_raises_transport_error(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def _refuse(url: str, timeout: float) -> None:
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(amqp_module.aio_pika, "connect_robust", _refuse)
        broker = AmqpBroker()
        with pytest.raises(TransportError):
            await broker.start()
        assert await broker.check_connection() is False
