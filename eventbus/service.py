"""EventBusService: wires storage, broker, publisher, dispatcher, replay and history."""

import logging
from pathlib import Path
from typing import Any, Iterable

from eventbus.broker.amqp import AmqpBroker
from eventbus.broker.base import BrokerAdapter
from eventbus.broker.memory import MemoryBroker
from eventbus.broker.outbox import OutboxBroker
from eventbus.delivery import CallbackClient
from eventbus.dispatcher import Dispatcher
from eventbus.history import HistoryService
from eventbus.models import BatchResult, DeliveryAttempt, Event, ReplayResult, Subscription
from eventbus.publisher import Publisher
from eventbus.replay import ReplayEngine
from eventbus.settings import get_setting
from eventbus.store import Database, EventStore, SubscriptionRegistry

logger = logging.getLogger(__name__)

_DISPATCHER_OPTIONS = (
    "workers",
    "max_attempts",
    "base_delay",
    "max_delay",
    "jitter",
    "recovery_interval",
    "stale_timeout",
    "chain_defer_delay",
    "shutdown_timeout",
)


def build_broker(settings: dict[str, Any], project_root: Path) -> BrokerAdapter:
    """Broker adapter selected by broker.type (outbox, memory or amqp)."""
    broker_type = get_setting(settings, "broker.type", "outbox")
    if broker_type == "memory":
        return MemoryBroker()
    if broker_type == "amqp":
        cfg = get_setting(settings, "broker.amqp", {})
        return AmqpBroker(
            url=cfg.get("url", "amqp://localhost"),
            queue_name=cfg.get("queue", "event_bus.dispatch"),
            prefetch_count=int(cfg.get("prefetch_count", 16)),
            connection_timeout=float(cfg.get("connection_timeout", 10.0)),
        )
    if broker_type == "outbox":
        cfg = get_setting(settings, "broker.outbox", {})
        return OutboxBroker(
            db_path=project_root / cfg.get("db_path", "data/event_outbox.db"),
            poll_interval=float(cfg.get("poll_interval", 1.0)),
            lease_timeout=float(cfg.get("lease_timeout", 900.0)),
            busy_timeout=int(get_setting(settings, "event_bus.busy_timeout", 5000)),
        )
    raise ValueError(f"Unknown broker type: {broker_type!r}")


class EventBusService:
    """Facade over the Event Bus components. One instance per process.

    publish/subscribe/history calls work before start(); deliveries only happen
    while the dispatcher runs.
    """

    def __init__(
        self,
        db: Database,
        broker: BrokerAdapter,
        *,
        client: CallbackClient | None = None,
        strict_event_types: bool = False,
        subscription_refresh_interval: float = 5.0,
        **dispatcher_options: Any,
    ) -> None:
        self._db = db
        self._broker = broker
        self._client = client or CallbackClient()
        self.store = EventStore(db)
        self.registry = SubscriptionRegistry(db, refresh_interval=subscription_refresh_interval)
        self.publisher = Publisher(self.store, broker, strict_event_types=strict_event_types)
        self.dispatcher = Dispatcher(
            self.store, self.registry, broker, self._client, **dispatcher_options
        )
        self.replay_engine = ReplayEngine(self.store, broker)
        self.history = HistoryService(self.store, self.registry)
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: dict[str, Any],
        project_root: Path,
        client: CallbackClient | None = None,
    ) -> "EventBusService":
        eb_cfg = settings.get("event_bus", {})
        db = Database(
            project_root / eb_cfg.get("db_path", "data/event_bus.db"),
            busy_timeout=int(eb_cfg.get("busy_timeout", 5000)),
        )
        if client is None:
            client = CallbackClient(timeout=float(eb_cfg.get("callback_timeout", 30.0)))
        return cls(
            db,
            build_broker(settings, project_root),
            client=client,
            strict_event_types=bool(eb_cfg.get("strict_event_types", False)),
            subscription_refresh_interval=float(eb_cfg.get("subscription_refresh_interval", 5.0)),
            **{k: eb_cfg[k] for k in _DISPATCHER_OPTIONS if k in eb_cfg},
        )

    @property
    def broker(self) -> BrokerAdapter:
        return self._broker

    # --- Lifecycle ---

    async def start(self) -> None:
        """Open storage, start the broker, then the dispatcher (which runs a recovery scan)."""
        if self._started:
            return
        await self._db.ensure_conn()
        await self._broker.start()
        await self.dispatcher.start()
        self._started = True
        logger.info("Event Bus started (broker=%s)", type(self._broker).__name__)

    async def stop(self) -> None:
        """Graceful shutdown. Unfinished deliveries stay redeliverable."""
        if self._started:
            await self.dispatcher.stop()
            self._started = False
        await self._broker.close()
        await self._client.aclose()
        await self._db.close()
        logger.info("Event Bus stopped")

    async def __aenter__(self) -> "EventBusService":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    async def check_connection(self) -> bool:
        """Broker reachability."""
        return await self._broker.check_connection()

    async def health(self) -> dict[str, Any]:
        broker_ok = await self.check_connection()
        database_ok = await self._db.ping()
        return {
            "status": "healthy" if broker_ok and database_ok else "degraded",
            "broker": "connected" if broker_ok else "disconnected",
            "database": "ok" if database_ok else "unavailable",
            "dispatcher": "running" if self.dispatcher.running else "stopped",
        }

    # --- Producers ---

    async def publish(self, event: dict[str, Any]) -> str:
        return await self.publisher.publish(event)

    async def publish_batch(
        self, events: Iterable[dict[str, Any]], created_by: str | None = None
    ) -> BatchResult:
        return await self.publisher.publish_batch(events, created_by=created_by)

    async def publish_domain_event(
        self,
        domain: str,
        action: str,
        data: dict[str, Any],
        created_by: str | None = None,
        correlation_id: str | None = None,
    ) -> str:
        return await self.publisher.publish_domain_event(
            domain, action, data, created_by=created_by, correlation_id=correlation_id
        )

    # --- Consumers ---

    async def subscribe(self, spec: dict[str, Any]) -> str:
        return await self.registry.create_subscription(spec)

    async def list_subscriptions(
        self,
        service_name: str | None = None,
        event_type: str | None = None,
        include_inactive: bool = False,
    ) -> list[Subscription]:
        return await self.registry.list_subscriptions(
            service_name=service_name, event_type=event_type, include_inactive=include_inactive
        )

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return await self.registry.get_subscription(subscription_id)

    async def delete_subscription(self, subscription_id: str) -> None:
        await self.registry.delete_subscription(subscription_id)

    # --- History, stats, replay ---

    async def get_history(self, **filters: Any) -> list[Event]:
        return await self.history.get_history(**filters)

    async def get_stats(self, days: int = 7) -> dict[str, Any]:
        return await self.history.get_stats(days)

    async def get_event(self, event_id: str) -> Event:
        return await self.history.get_event(event_id)

    async def list_attempts(self, event_id: str) -> list[DeliveryAttempt]:
        return await self.history.list_attempts(event_id)

    async def replay(
        self, event_ids: Iterable[str], target_service: str | None = None
    ) -> list[ReplayResult]:
        return await self.replay_engine.replay(event_ids, target_service)
