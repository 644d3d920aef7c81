"""History & Stats: read-only queries and aggregations over the Event Store."""

import time
from datetime import UTC, datetime
from typing import Any

from eventbus.errors import NotFoundError, ValidationError
from eventbus.models import DeliveryAttempt, Event, EventStatus, iso
from eventbus.store.events import EventStore
from eventbus.store.subscriptions import SubscriptionRegistry

DEFAULT_LIMIT = 50
MAX_LIMIT = 500


def parse_timestamp(value: Any, field: str) -> float | None:
    """Accept datetime, ISO 8601 string or epoch seconds. Naive datetimes are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.timestamp()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
        try:
            return parse_timestamp(datetime.fromisoformat(value.replace("Z", "+00:00")), field)
        except ValueError:
            pass
    raise ValidationError(
        f"Invalid {field}", [{"field": field, "message": "expected ISO 8601 date or epoch seconds"}]
    )


def _ratio(part: int, total: int) -> float:
    return round(part / total, 4) if total else 0.0


class HistoryService:
    """Never mutates state."""

    def __init__(self, store: EventStore, registry: SubscriptionRegistry) -> None:
        self._store = store
        self._registry = registry

    async def get_history(
        self,
        event_type: str | None = None,
        source_service: str | None = None,
        date_from: Any = None,
        date_to: Any = None,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        status: str | None = None,
        correlation_id: str | None = None,
    ) -> list[Event]:
        """Events matching all given filters, oldest first."""
        if status is not None and status not in set(EventStatus):
            raise ValidationError(
                f"Unknown status: {status}", [{"field": "status", "message": "unknown status"}]
            )
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        return await self._store.query_events(
            event_type=event_type or None,
            source_service=source_service or None,
            status=status or None,
            correlation_id=correlation_id or None,
            created_from=parse_timestamp(date_from, "date_from"),
            created_to=parse_timestamp(date_to, "date_to"),
            limit=min(limit, MAX_LIMIT),
            offset=offset,
        )

    async def get_event(self, event_id: str) -> Event:
        event = await self._store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        return event

    async def list_attempts(self, event_id: str) -> list[DeliveryAttempt]:
        await self.get_event(event_id)
        return await self._store.list_attempts(event_id)

    async def get_stats(self, days: int = 7) -> dict[str, Any]:
        """Aggregates over the trailing `days` days."""
        if days < 1:
            raise ValidationError("days must be at least 1")
        now = time.time()
        since = now - days * 86400
        by_type = await self._store.count_events_by("event_type", since)
        by_source = await self._store.count_events_by("source_service", since)
        by_status = await self._store.count_events_by("status", since)
        outcomes = await self._store.count_attempts_by_outcome(since)
        succeeded = outcomes.get("success", 0)
        failed = outcomes.get("failure", 0)
        total_attempts = succeeded + failed
        active = await self._registry.list_subscriptions()
        return {
            "period_days": days,
            "total_events": sum(by_type.values()),
            "event_types": by_type,
            "services": by_source,
            "statuses": {str(s): by_status.get(str(s), 0) for s in EventStatus},
            "deliveries": {
                "total_attempts": total_attempts,
                "succeeded": succeeded,
                "failed": failed,
                "success_ratio": _ratio(succeeded, total_attempts),
                "failure_ratio": _ratio(failed, total_attempts),
            },
            "active_subscriptions": len(active),
            "generated_at": iso(now),
        }
