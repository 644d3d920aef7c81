"""Publisher: validate, persist, then enqueue. Persistence always happens before enqueue."""

import logging
from typing import Any, Iterable

import pydantic

from eventbus.broker.base import BrokerAdapter, BrokerMessage
from eventbus.errors import TransportError, ValidationError
from eventbus.models import BatchResult, Event, EventIn, PublishResult
from eventbus.store.events import EventStore
from eventbus.topics import DOMAIN_SOURCES, is_known_event_type

logger = logging.getLogger(__name__)


def message_for(event: Event, **overrides: Any) -> BrokerMessage:
    """Broker message for an accepted event."""
    return BrokerMessage(
        event_id=event.event_id,
        priority=event.priority,
        correlation_id=event.correlation_id,
        delivery_round=overrides.get("delivery_round", event.delivery_round),
        target_service=overrides.get("target_service"),
        replay=overrides.get("replay", False),
    )


class Publisher:
    """Accepts events from producers. Returns event_id synchronously; delivery is asynchronous."""

    def __init__(
        self,
        store: EventStore,
        broker: BrokerAdapter,
        strict_event_types: bool = False,
    ) -> None:
        self._store = store
        self._broker = broker
        self._strict_event_types = strict_event_types

    def validate(self, event: dict[str, Any] | EventIn) -> EventIn:
        """Return a validated EventIn or raise ValidationError."""
        if isinstance(event, EventIn):
            event_in = event
        else:
            if not isinstance(event, dict):
                raise ValidationError("Event must be an object")
            try:
                event_in = EventIn.model_validate(event)
            except pydantic.ValidationError as e:
                raise ValidationError.from_pydantic(e, "Validation failed") from e
        if self._strict_event_types and not is_known_event_type(event_in.event_type):
            raise ValidationError(
                f"Unknown event type: {event_in.event_type}",
                [{"field": "event_type", "message": "not a known event type"}],
            )
        return event_in

    async def publish(self, event: dict[str, Any] | EventIn) -> str:
        """Validate, persist with status=accepted, enqueue. Returns event_id.

        An enqueue failure is logged and absorbed: the event stays accepted and the
        dispatcher recovery scan enqueues it later.
        """
        event_in = self.validate(event)
        stored = await self._store.insert_event(event_in)
        try:
            await self._broker.enqueue(message_for(stored))
        except TransportError as e:
            logger.warning(
                "Event %s (%s) persisted but not enqueued, left for recovery: %s",
                stored.event_id,
                stored.event_type,
                e,
            )
        logger.info(
            "Event published: %s from %s (event_id=%s, correlation_id=%s)",
            stored.event_type,
            stored.source_service,
            stored.event_id,
            stored.correlation_id,
        )
        return stored.event_id

    async def publish_batch(
        self,
        events: Iterable[dict[str, Any] | EventIn],
        created_by: str | None = None,
    ) -> BatchResult:
        """Publish each event independently. Partial success is reported, not hidden."""
        events = list(events)
        if not events:
            raise ValidationError("Events array is required")
        results: list[PublishResult] = []
        for index, event in enumerate(events):
            event_type = event.get("event_type") if isinstance(event, dict) else getattr(
                event, "event_type", None
            )
            if created_by is not None and isinstance(event, dict):
                event = {**event, "created_by": event.get("created_by") or created_by}
            try:
                event_id = await self.publish(event)
                results.append(
                    PublishResult(
                        index=index, success=True, event_id=event_id, event_type=event_type
                    )
                )
            except ValidationError as e:
                results.append(
                    PublishResult(
                        index=index,
                        success=False,
                        event_type=event_type if isinstance(event_type, str) else None,
                        error=e.message,
                    )
                )
            except Exception as e:
                logger.exception("Batch publish: event %d (%s) failed", index, event_type)
                results.append(
                    PublishResult(
                        index=index,
                        success=False,
                        event_type=event_type if isinstance(event_type, str) else None,
                        error=str(e) or type(e).__name__,
                    )
                )
        successful = sum(1 for r in results if r.success)
        return BatchResult(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )

    async def publish_domain_event(
        self,
        domain: str,
        action: str,
        data: dict[str, Any],
        created_by: str | None = None,
        correlation_id: str | None = None,
    ) -> str:
        """Shortcut for producers: event_type = "<domain>.<action>", source from DOMAIN_SOURCES."""
        source_service = DOMAIN_SOURCES.get(domain)
        if source_service is None:
            raise ValidationError(f"Unknown event domain: {domain}")
        return await self.publish(
            {
                "event_type": f"{domain}.{action}",
                "data": data,
                "source_service": source_service,
                "created_by": created_by,
                "correlation_id": correlation_id,
            }
        )
