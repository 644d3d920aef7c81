"""Replay Engine: re-deliver stored events without creating new ones."""

import logging
from typing import Iterable

from eventbus.broker.base import BrokerAdapter
from eventbus.errors import NotFoundError, TransportError, ValidationError
from eventbus.models import ReplayResult
from eventbus.publisher import message_for
from eventbus.store.events import EventStore

logger = logging.getLogger(__name__)


class ReplayEngine:
    """Re-enqueues stored events under their original event_id.

    Each replay starts a new delivery round: attempt numbering keeps increasing per
    (event, subscription), while the retry ceiling counts only the new round.
    """

    def __init__(self, store: EventStore, broker: BrokerAdapter) -> None:
        self._store = store
        self._broker = broker

    async def replay_event(self, event_id: str, target_service: str | None = None) -> int:
        """Replay one event. Returns the new round number. Raises NotFoundError, TransportError."""
        event = await self._store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        delivery_round = await self._store.begin_round(event_id)
        await self._broker.enqueue(
            message_for(
                event, delivery_round=delivery_round, target_service=target_service, replay=True
            )
        )
        logger.info(
            "Event %s (%s) replayed, round %d%s",
            event_id,
            event.event_type,
            delivery_round,
            f" to {target_service}" if target_service else "",
        )
        return delivery_round

    async def replay(
        self, event_ids: Iterable[str], target_service: str | None = None
    ) -> list[ReplayResult]:
        """Replay each id independently; one unknown id never aborts the others."""
        event_ids = list(event_ids)
        if not event_ids:
            raise ValidationError("Event IDs array is required")
        results: list[ReplayResult] = []
        for event_id in event_ids:
            try:
                delivery_round = await self.replay_event(event_id, target_service)
                results.append(
                    ReplayResult(
                        event_id=event_id, status="replayed", delivery_round=delivery_round
                    )
                )
            except NotFoundError:
                results.append(ReplayResult(event_id=event_id, status="not_found"))
            except TransportError as e:
                logger.warning("Replay of %s failed: %s", event_id, e)
                results.append(ReplayResult(event_id=event_id, status="failed", error=str(e)))
        return results
