"""Broker adapters: durable transports behind one protocol."""

from eventbus.broker.base import BrokerAdapter, BrokerMessage
from eventbus.broker.memory import MemoryBroker
from eventbus.broker.outbox import OutboxBroker

__all__ = ["BrokerAdapter", "BrokerMessage", "MemoryBroker", "OutboxBroker"]
