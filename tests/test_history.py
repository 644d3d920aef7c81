"""Tests for HistoryService: filters, paging, single event, stats."""

from datetime import UTC, datetime

import pytest

from conftest import event_payload
from eventbus.errors import NotFoundError, ValidationError
from eventbus.history import HistoryService, parse_timestamp
from eventbus.models import AttemptOutcome, EventStatus
from eventbus.publisher import Publisher
from eventbus.store import Database, EventStore, SubscriptionRegistry


@pytest.fixture
def history(store: EventStore, registry: SubscriptionRegistry) -> HistoryService:
    return HistoryService(store, registry)


class TestParseTimestamp:
    """date_from / date_to accept several shapes."""

    def test_accepted_shapes(self) -> None:
        expected = datetime(2024, 5, 1, 12, 0, tzinfo=UTC).timestamp()
        assert parse_timestamp("2024-05-01T12:00:00Z", "date_from") == expected
        assert parse_timestamp("2024-05-01T12:00:00+00:00", "date_from") == expected
        assert parse_timestamp(datetime(2024, 5, 1, 12, 0), "date_from") == expected
        assert parse_timestamp(expected, "date_from") == expected
        assert parse_timestamp(str(expected), "date_from") == expected
        assert parse_timestamp(None, "date_from") is None
        assert parse_timestamp("", "date_from") is None

    def test_garbage_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_timestamp("yesterday", "date_to")


class TestGetHistory:
    """Filtered, paginated, oldest first."""

    @pytest.mark.asyncio
    async def test_filters(self, publisher: Publisher, history: HistoryService) -> None:
        order = await publisher.publish(event_payload(correlation_id="c1"))
        payment = await publisher.publish(
            event_payload(event_type="payment.created", source_service="payment-service")
        )

        assert [e.event_id for e in await history.get_history()] == [order, payment]
        by_type = await history.get_history(event_type="payment.created")
        assert [e.event_id for e in by_type] == [payment]
        by_source = await history.get_history(source_service="order-service")
        assert [e.event_id for e in by_source] == [order]
        by_chain = await history.get_history(correlation_id="c1")
        assert [e.event_id for e in by_chain] == [order]
        by_status = await history.get_history(status="accepted")
        assert len(by_status) == 2
        assert await history.get_history(status="delivered") == []

    @pytest.mark.asyncio
    async def test_date_range(
        self, publisher: Publisher, history: HistoryService, db: Database
    ) -> None:
        old = await publisher.publish(event_payload())
        new = await publisher.publish(event_payload())
        async with db.transaction() as conn:
            await conn.execute(
                "UPDATE events SET created_at = ? WHERE event_id = ?",
                (datetime(2024, 1, 1, tzinfo=UTC).timestamp(), old),
            )

        recent = await history.get_history(date_from="2025-01-01T00:00:00Z")
        assert [e.event_id for e in recent] == [new]
        early = await history.get_history(date_to="2024-06-01")
        assert [e.event_id for e in early] == [old]

    @pytest.mark.asyncio
    async def test_paging_and_limit_cap(self, publisher: Publisher, history: HistoryService) -> None:
        ids = [await publisher.publish(event_payload(data={"i": i})) for i in range(4)]
        page = await history.get_history(limit=2, offset=2)
        assert [e.event_id for e in page] == ids[2:]
        assert len(await history.get_history(limit=10_000)) == 4

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, history: HistoryService) -> None:
        with pytest.raises(ValidationError):
            await history.get_history(status="lost")
        with pytest.raises(ValidationError):
            await history.get_history(limit=0)
        with pytest.raises(ValidationError):
            await history.get_history(offset=-1)


class TestGetEvent:
    """Single event and its delivery trail."""

    @pytest.mark.asyncio
    async def test_get_event_and_attempts(
        self, publisher: Publisher, store: EventStore, history: HistoryService
    ) -> None:
        event_id = await publisher.publish(event_payload())
        await store.record_attempt(event_id, "s1", AttemptOutcome.FAILURE, "HTTP 500")
        assert (await history.get_event(event_id)).event_id == event_id
        assert [a.attempt_number for a in await history.list_attempts(event_id)] == [1]

    @pytest.mark.asyncio
    async def test_unknown_event(self, history: HistoryService) -> None:
        with pytest.raises(NotFoundError):
            await history.get_event("missing")
        with pytest.raises(NotFoundError):
            await history.list_attempts("missing")


class TestGetStats:
    """Aggregates over the trailing window."""

    @pytest.mark.asyncio
    async def test_stats(
        self,
        publisher: Publisher,
        store: EventStore,
        registry: SubscriptionRegistry,
        history: HistoryService,
    ) -> None:
        delivered = await publisher.publish(event_payload())
        dead = await publisher.publish(event_payload(event_type="payment.failed", source_service="payment-service"))
        await publisher.publish(event_payload())
        await store.advance_status(delivered, EventStatus.DELIVERED)
        await store.advance_status(dead, EventStatus.DEAD_LETTERED)
        await store.record_attempt(delivered, "s1", AttemptOutcome.SUCCESS, "HTTP 200")
        for _ in range(3):
            await store.record_attempt(dead, "s1", AttemptOutcome.FAILURE, "HTTP 500")
        await registry.create_subscription(
            {"event_types": ["*"], "callback_url": "http://x/hook", "service_name": "x"}
        )

        stats = await history.get_stats(days=7)
        assert stats["period_days"] == 7
        assert stats["total_events"] == 3
        assert stats["event_types"] == {"order.created": 2, "payment.failed": 1}
        assert stats["services"] == {"order-service": 2, "payment-service": 1}
        assert stats["statuses"] == {
            "accepted": 1,
            "dispatched": 0,
            "delivered": 1,
            "failed": 0,
            "dead_lettered": 1,
        }
        assert stats["deliveries"] == {
            "total_attempts": 4,
            "succeeded": 1,
            "failed": 3,
            "success_ratio": 0.25,
            "failure_ratio": 0.75,
        }
        assert stats["active_subscriptions"] == 1
        assert stats["generated_at"].startswith(str(datetime.now(UTC).year))

    @pytest.mark.asyncio
    async def test_empty_window(self, history: HistoryService) -> None:
        stats = await history.get_stats(days=1)
        assert stats["total_events"] == 0
        assert stats["deliveries"]["success_ratio"] == 0.0

    @pytest.mark.asyncio
    async def test_days_must_be_positive(self, history: HistoryService) -> None:
        with pytest.raises(ValidationError):
            await history.get_stats(days=0)
