"""Delivery Dispatcher: consume from the broker, match subscriptions, deliver with retry/backoff."""

import asyncio
import logging
import random
import time
from collections import deque
from typing import Coroutine, NamedTuple

from eventbus.broker.base import BrokerAdapter, BrokerMessage
from eventbus.delivery import CallbackClient
from eventbus.errors import TransportError
from eventbus.models import TERMINAL_STATUSES, AttemptOutcome, Event, EventStatus, Subscription
from eventbus.publisher import message_for
from eventbus.store.events import EventStore
from eventbus.store.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


def compute_retry_delay(
    attempt: int, base: float = 1.0, max_delay: float = 300.0, jitter: float = 0.0
) -> float:
    """Exponential backoff after the attempt-th failure (1-based), with optional jitter, capped."""
    delay = base * (2 ** max(attempt - 1, 0))
    if jitter:
        delay += random.uniform(0, delay * jitter)
    return min(delay, max_delay)


class _Progress(NamedTuple):
    """Where one subscription stands after a pass. retry_in is None once it is settled."""

    succeeded: bool
    retry_in: float | None


class Dispatcher:
    """Stateless between restarts: everything it needs to resume lives in the Event Store.

    - One consume loop pulls a message only when one of `workers` slots is free, so the
      broker's priority order decides what runs next when the pool is saturated.
    - Processing a message is one delivery pass: at most one attempt for each matched
      subscription whose retry is due, all of them concurrent. The slot is released when
      the pass ends. Pending retries go back to the broker with a delay (nack), so a
      subscription in backoff holds no slot.
    - Events sharing a correlation_id run through one lane, in consume order. A later
      event of the chain is deferred until every earlier one is terminal.
    """

    def __init__(
        self,
        store: EventStore,
        registry: SubscriptionRegistry,
        broker: BrokerAdapter,
        client: CallbackClient,
        *,
        workers: int = 8,
        max_attempts: int = 8,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter: float = 0.1,
        recovery_interval: float = 30.0,
        stale_timeout: float = 300.0,
        chain_defer_delay: float = 0.5,
        shutdown_timeout: float = 30.0,
        recovery_batch: int = 100,
    ) -> None:
        self._store = store
        self._registry = registry
        self._broker = broker
        self._client = client
        self._workers = workers
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._recovery_interval = recovery_interval
        self._stale_timeout = stale_timeout
        self._chain_defer_delay = chain_defer_delay
        self._shutdown_timeout = shutdown_timeout
        self._recovery_batch = recovery_batch
        self._slots = asyncio.Semaphore(workers)
        self._stopping = asyncio.Event()
        self._consume_task: asyncio.Task[None] | None = None
        self._watchdog_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._lanes: dict[str, deque[BrokerMessage]] = {}
        self._in_flight: set[str] = set()

    @property
    def running(self) -> bool:
        return self._consume_task is not None and not self._consume_task.done()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    async def start(self) -> None:
        """Recover, then start the consume loop and the recovery watchdog as asyncio Tasks."""
        self._stopping.clear()
        self._slots = asyncio.Semaphore(self._workers)
        await self.recover()
        self._consume_task = asyncio.create_task(self._consume_loop())
        self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        logger.info("Dispatcher started with %d workers", self._workers)

    async def stop(self) -> None:
        """Graceful shutdown: stop consuming, let running passes finish, nack the rest."""
        self._stopping.set()
        for task in (self._watchdog_task, self._consume_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watchdog_task = None
        self._consume_task = None

        pending = set(self._tasks)
        if pending:
            _, not_done = await asyncio.wait(pending, timeout=self._shutdown_timeout)
            for task in not_done:
                task.cancel()
            if not_done:
                await asyncio.gather(*not_done, return_exceptions=True)
                logger.warning(
                    "Dispatcher: cancelled %d deliveries still running after %.0fs",
                    len(not_done),
                    self._shutdown_timeout,
                )
        logger.info("Dispatcher stopped")

    async def recover(self, stale_timeout: float | None = None) -> int:
        """Re-enqueue accepted/dispatched/failed events untouched for stale_timeout seconds.

        Covers events whose enqueue failed at publish time and in-flight retries lost
        to a crash. Returns the number of events re-enqueued.
        """
        threshold = time.time() - (self._stale_timeout if stale_timeout is None else stale_timeout)
        events = await self._store.find_unfinished(threshold, limit=self._recovery_batch)
        count = 0
        for event in events:
            if event.event_id in self._in_flight:
                continue
            try:
                await self._broker.enqueue(message_for(event))
            except TransportError as e:
                logger.warning("Dispatcher recovery: broker unavailable, will retry: %s", e)
                break
            await self._store.touch(event.event_id)
            count += 1
        if count:
            logger.info("Dispatcher recovery: re-enqueued %d events", count)
        return count

    async def _watchdog_loop(self) -> None:
        """Periodically re-enqueue stale unfinished events."""
        while not self._stopping.is_set():
            if await self._wait_or_stop(self._recovery_interval):
                break
            try:
                await self.recover()
            except Exception as e:
                logger.exception("Dispatcher recovery scan failed: %s", e)

    async def _wait_or_stop(self, delay: float) -> bool:
        """Sleep for delay seconds. Returns True early if shutdown started."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _spawn(self, coro: Coroutine[None, None, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _consume_loop(self) -> None:
        """Main loop: wait for a free slot, take the next message, route it."""
        while not self._stopping.is_set():
            await self._slots.acquire()
            if self._stopping.is_set():
                self._slots.release()
                break
            try:
                message = await self._broker.consume()
            except asyncio.CancelledError:
                self._slots.release()
                raise
            except Exception as e:
                self._slots.release()
                logger.exception("Dispatcher consume failed: %s", e)
                await self._wait_or_stop(1.0)
                continue
            self._route(message)

    def _route(self, message: BrokerMessage) -> None:
        chain = message.correlation_id
        if not chain:
            self._spawn(self._run_one(message))
            return
        lane = self._lanes.get(chain)
        if lane is not None:
            # Queued messages wait without a slot; the lane takes one per message.
            lane.append(message)
            self._slots.release()
            return
        self._lanes[chain] = deque([message])
        self._spawn(self._run_lane(chain))

    async def _run_lane(self, chain: str) -> None:
        """Process one correlation chain's messages one after another.

        The first message runs on the slot the consume loop took for it.
        """
        lane = self._lanes[chain]
        try:
            await self._run_one(lane.popleft())
            while lane:
                await self._slots.acquire()
                await self._run_one(lane.popleft())
        finally:
            if self._lanes.get(chain) is lane:
                del self._lanes[chain]

    async def _run_one(self, message: BrokerMessage) -> None:
        try:
            await self._process(message)
        except Exception as e:
            logger.exception("Dispatcher failed processing event %s: %s", message.event_id, e)
            try:
                await self._broker.nack(message, delay=self._base_delay)
            except Exception as nack_error:
                logger.warning("Dispatcher nack failed for %s: %s", message.event_id, nack_error)
        finally:
            self._slots.release()

    async def _process(self, message: BrokerMessage) -> None:
        if self._stopping.is_set():
            await self._broker.nack(message)
            return

        event = await self._store.get_event(message.event_id)
        if event is None:
            logger.warning("Dispatcher: event %s not in store, dropping message", message.event_id)
            await self._broker.ack(message)
            return
        if message.delivery_round < event.delivery_round:
            logger.debug(
                "Dispatcher: dropping round %d message for %s, now in round %d",
                message.delivery_round,
                event.event_id,
                event.delivery_round,
            )
            await self._broker.ack(message)
            return
        if not message.replay and event.status in TERMINAL_STATUSES:
            await self._broker.ack(message)
            return
        if event.event_id in self._in_flight:
            if message.replay:
                # Replay waits for the current pass to finish.
                await self._broker.nack(message, delay=self._chain_defer_delay)
                return
            logger.debug("Dispatcher: duplicate message for in-flight event %s", event.event_id)
            await self._broker.ack(message)
            return
        if not message.replay and event.correlation_id:
            earlier = await self._store.open_predecessors(event.correlation_id, event.sequence)
            if earlier:
                logger.debug(
                    "Dispatcher: deferring %s until %d earlier events of chain %s finish",
                    event.event_id,
                    len(earlier),
                    event.correlation_id,
                )
                await self._store.touch(event.event_id)
                await self._broker.nack(message, delay=self._chain_defer_delay)
                return

        self._in_flight.add(event.event_id)
        try:
            retry_in = await self._deliver_event(event, message)
        finally:
            self._in_flight.discard(event.event_id)

        if retry_in is None:
            await self._broker.ack(message)
        else:
            await self._broker.nack(message, delay=retry_in)

    async def _deliver_event(self, event: Event, message: BrokerMessage) -> float | None:
        """One delivery pass over the matched subscriptions.

        Returns None once the event is terminal, otherwise the seconds until the
        earliest pending retry is due.
        """
        subscriptions = await self._registry.match_subscriptions(event)
        if message.target_service:
            subscriptions = [s for s in subscriptions if s.service_name == message.target_service]

        if not subscriptions:
            await self._store.advance_status(event.event_id, EventStatus.DELIVERED)
            logger.debug("Event %s matched no subscriptions", event.event_id)
            return None

        await self._store.advance_status(event.event_id, EventStatus.DISPATCHED)
        progress = await asyncio.gather(
            *(self._deliver_to(event, sub, message.delivery_round) for sub in subscriptions)
        )
        pending = [p.retry_in for p in progress if p.retry_in is not None]
        if pending:
            return max(min(pending), 0.0)

        if all(p.succeeded for p in progress):
            await self._store.advance_status(event.event_id, EventStatus.DELIVERED)
        else:
            failed = [s.subscription_id for s, p in zip(subscriptions, progress) if not p.succeeded]
            await self._store.advance_status(event.event_id, EventStatus.DEAD_LETTERED)
            logger.error(
                "Event %s (%s) dead-lettered: retries exhausted for subscriptions %s",
                event.event_id,
                event.event_type,
                ", ".join(failed),
            )
        return None

    async def _deliver_to(
        self, event: Event, subscription: Subscription, delivery_round: int
    ) -> _Progress:
        """At most one attempt for one (event, subscription) in one round.

        Resumes from the attempts already recorded for the round. An attempt is made
        only once the backoff after the previous failure has elapsed.
        """
        made, succeeded, last_attempted_at = await self._store.round_progress(
            event.event_id, subscription.subscription_id, delivery_round
        )
        if succeeded:
            return _Progress(True, None)
        if made >= self._max_attempts:
            return _Progress(False, None)
        if made and last_attempted_at is not None:
            due_at = last_attempted_at + compute_retry_delay(
                made, self._base_delay, self._max_delay
            )
            if due_at > time.time():
                return _Progress(False, due_at - time.time())
        if self._stopping.is_set():
            return _Progress(False, 0.0)

        result = await self._client.deliver(
            subscription.callback_url, event, attempt_number=made + 1
        )
        await self._store.record_attempt(
            event.event_id,
            subscription.subscription_id,
            AttemptOutcome.SUCCESS if result.success else AttemptOutcome.FAILURE,
            result.detail,
            delivery_round=delivery_round,
            duration_ms=result.duration_ms,
        )
        made += 1
        if result.success:
            logger.info(
                "Event %s delivered to %s (attempt %d)",
                event.event_id,
                subscription.service_name,
                made,
            )
            return _Progress(True, None)

        await self._store.advance_status(event.event_id, EventStatus.FAILED)
        if made >= self._max_attempts:
            logger.error(
                "Delivery of %s to %s exhausted %d attempts",
                event.event_id,
                subscription.callback_url,
                self._max_attempts,
            )
            return _Progress(False, None)

        delay = compute_retry_delay(made, self._base_delay, self._max_delay, self._jitter)
        logger.warning(
            "Delivery of %s to %s failed (attempt %d/%d): %s; retrying in %.1fs",
            event.event_id,
            subscription.callback_url,
            made,
            self._max_attempts,
            result.detail,
            delay,
        )
        return _Progress(False, delay)
