"""Shared fixtures: one SQLite database per test under tmp_path."""

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx
import pytest

from eventbus.broker import MemoryBroker
from eventbus.delivery import CallbackClient
from eventbus.dispatcher import Dispatcher
from eventbus.models import EventStatus
from eventbus.publisher import Publisher
from eventbus.store import Database, EventStore, SubscriptionRegistry


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "event_bus.db"


@pytest.fixture
async def db(db_path: Path) -> Database:
    database = Database(db_path)
    await database.ensure_conn()
    yield database
    await database.close()


@pytest.fixture
def store(db: Database) -> EventStore:
    return EventStore(db)


@pytest.fixture
def registry(db: Database) -> SubscriptionRegistry:
    return SubscriptionRegistry(db, refresh_interval=0.0)


def event_payload(**overrides: Any) -> dict[str, Any]:
    event = {
        "event_type": "order.created",
        "data": {"order_id": "o1"},
        "source_service": "order-service",
    }
    event.update(overrides)
    return event


async def wait_for_status(
    store: EventStore, event_id: str, *statuses: EventStatus, timeout: float = 5.0
) -> str:
    """Poll the store until the event reaches one of statuses. Returns the status."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        event = await store.get_event(event_id)
        if event is not None and event.status in statuses:
            return event.status
        if asyncio.get_running_loop().time() > deadline:
            current = event.status if event is not None else None
            raise AssertionError(f"event {event_id} stuck in {current}, wanted {statuses}")
        await asyncio.sleep(0.01)


# --- Dispatcher harness: scripted subscribers behind httpx.MockTransport ---

FAST_DISPATCH = {
    "workers": 4,
    "max_attempts": 3,
    "base_delay": 0.01,
    "max_delay": 0.05,
    "jitter": 0.0,
    "recovery_interval": 60.0,
    "stale_timeout": 60.0,
    "chain_defer_delay": 0.02,
    "shutdown_timeout": 2.0,
}


class Subscriber:
    """Callback endpoints keyed by host. Records every request it receives.

    ok: 200. fail: 500. timeout: read timeout. slow: 200 after 0.2s.
    flaky: 500 for the first `flaky_failures` calls per event, then 200.
    toggle: 500 until `healthy` is set. stall: 500 after 0.5s.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.flaky_failures = 2
        self.healthy = False
        self._per_event: dict[tuple[str, str], int] = {}

    def for_host(self, host: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["host"] == host]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        host = request.url.host
        self.calls.append(
            {
                "host": host,
                "event_id": body["event_id"],
                "data": body["data"],
                "attempt": request.headers.get("X-Delivery-Attempt"),
            }
        )
        key = (host, body["event_id"])
        self._per_event[key] = self._per_event.get(key, 0) + 1
        if host == "fail":
            return httpx.Response(500)
        if host == "stall":
            await asyncio.sleep(0.5)
            return httpx.Response(500)
        if host == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if host == "slow":
            await asyncio.sleep(0.2)
        if host == "flaky" and self._per_event[key] <= self.flaky_failures:
            return httpx.Response(503)
        if host == "toggle" and not self.healthy:
            return httpx.Response(500)
        if host == "chain" and body["data"].get("step") == 1:
            await asyncio.sleep(0.05)
        return httpx.Response(200)


@pytest.fixture
def subscriber() -> Subscriber:
    return Subscriber()


@pytest.fixture
def broker() -> MemoryBroker:
    return MemoryBroker()


@pytest.fixture
def publisher(store: EventStore, broker: MemoryBroker) -> Publisher:
    return Publisher(store, broker)


@pytest.fixture
async def make_dispatcher(
    store: EventStore,
    registry: SubscriptionRegistry,
    broker: MemoryBroker,
    subscriber: Subscriber,
) -> Callable[..., Awaitable[Dispatcher]]:
    """Factory for started dispatchers; all of them are stopped at teardown."""
    started: list[tuple[Dispatcher, httpx.AsyncClient]] = []

    async def _make(**options: Any) -> Dispatcher:
        http = httpx.AsyncClient(transport=httpx.MockTransport(subscriber.handle))
        client = CallbackClient(timeout=1.0, client=http)
        dispatcher = Dispatcher(store, registry, broker, client, **{**FAST_DISPATCH, **options})
        await dispatcher.start()
        started.append((dispatcher, http))
        return dispatcher

    yield _make
    for dispatcher, http in started:
        await dispatcher.stop()
        await http.aclose()


async def subscribe(registry: SubscriptionRegistry, host: str, **overrides: Any) -> str:
    spec = {
        "event_types": ["order.*"],
        "callback_url": f"http://{host}/events",
        "service_name": f"{host}-service",
    }
    spec.update(overrides)
    return await registry.create_subscription(spec)
