"""Broker Adapter contract: the only seam that touches a transport-specific API."""

import json
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Protocol, runtime_checkable

from eventbus.models import DEFAULT_PRIORITY


@dataclass(frozen=True)
class BrokerMessage:
    """Dispatch request for one accepted event. The event itself stays in the Event Store."""

    event_id: str
    priority: int = DEFAULT_PRIORITY
    correlation_id: str | None = None
    delivery_round: int = 0
    target_service: str | None = None
    replay: bool = False
    # Adapter-specific handle (outbox row id, AMQP IncomingMessage). Not serialized.
    delivery_tag: Any = field(default=None, compare=False, repr=False)

    def to_json(self) -> str:
        d = asdict(self)
        d.pop("delivery_tag", None)
        return json.dumps(d, ensure_ascii=False)

    @classmethod
    def from_json(cls, data: str | bytes, delivery_tag: Any = None) -> "BrokerMessage":
        d = json.loads(data)
        return cls(
            event_id=d["event_id"],
            priority=d.get("priority", DEFAULT_PRIORITY),
            correlation_id=d.get("correlation_id"),
            delivery_round=d.get("delivery_round", 0),
            target_service=d.get("target_service"),
            replay=d.get("replay", False),
            delivery_tag=delivery_tag,
        )

    def with_tag(self, delivery_tag: Any) -> "BrokerMessage":
        return replace(self, delivery_tag=delivery_tag)


@runtime_checkable
class BrokerAdapter(Protocol):
    """Durable publish/consume transport.

    Once enqueue() returns, the message is handed to consume() at least once, even
    across a process restart, until it is acked.
    """

    async def start(self) -> None:
        """Connect and return messages left unacknowledged by a previous run to the queue."""

    async def enqueue(self, message: BrokerMessage) -> None:
        """Durably enqueue. Raises TransportError when the transport is unreachable."""

    async def consume(self) -> BrokerMessage:
        """Block until a message is available. Cancel the awaiting task to stop."""

    async def ack(self, message: BrokerMessage) -> None:
        """Processing finished; the message will not be redelivered."""

    async def nack(self, message: BrokerMessage, delay: float = 0.0) -> None:
        """Processing did not finish; redeliver after delay seconds."""

    async def check_connection(self) -> bool:
        """True = transport reachable."""

    async def close(self) -> None:
        """Release connections. Unacked messages stay redeliverable."""
