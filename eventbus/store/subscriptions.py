"""Subscription Registry: durable subscriptions and matching against events."""

import asyncio
import logging
import time
import uuid
from typing import Any

import pydantic

from eventbus.errors import NotFoundError, ValidationError
from eventbus.matching import matches_event_type, subscription_matches
from eventbus.models import Event, Subscription, SubscriptionIn
from eventbus.store.db import Database, json_dumps, json_loads

logger = logging.getLogger(__name__)

_COLUMNS = (
    "subscription_id, event_types, callback_url, service_name, filter_criteria, "
    "created_by, active, created_at"
)


def _row_to_subscription(row: tuple) -> Subscription:
    return Subscription(
        subscription_id=row[0],
        event_types=json_loads(row[1]),
        callback_url=row[2],
        service_name=row[3],
        filter_criteria=json_loads(row[4]) if row[4] is not None else None,
        created_by=row[5],
        active=bool(row[6]),
        created_at=row[7],
    )


class SubscriptionRegistry:
    """Owns Subscription records. Subscriptions are soft-deleted (active=0), never removed.

    Matching reads an in-memory snapshot of active subscriptions that is reloaded from
    the database every refresh_interval seconds, and immediately after local changes.
    """

    def __init__(self, db: Database, refresh_interval: float = 5.0) -> None:
        self._db = db
        self._refresh_interval = refresh_interval
        self._snapshot: list[Subscription] = []
        self._loaded_at: float | None = None
        self._refresh_lock = asyncio.Lock()

    async def create_subscription(self, spec: dict[str, Any] | SubscriptionIn) -> str:
        """Validate and persist a subscription. Returns subscription_id."""
        if isinstance(spec, SubscriptionIn):
            sub_in = spec
        else:
            try:
                sub_in = SubscriptionIn.model_validate(spec)
            except pydantic.ValidationError as e:
                raise ValidationError.from_pydantic(e, "Invalid subscription") from e

        subscription_id = str(uuid.uuid4())
        async with self._db.transaction() as conn:
            await conn.execute(
                f"""
                INSERT INTO subscriptions ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    subscription_id,
                    json_dumps(sub_in.event_types),
                    sub_in.callback_url,
                    sub_in.service_name,
                    json_dumps(sub_in.filter_criteria)
                    if sub_in.filter_criteria is not None
                    else None,
                    sub_in.created_by,
                    time.time(),
                ),
            )
        self.invalidate()
        logger.info(
            "Subscription %s created for %s: %s",
            subscription_id,
            sub_in.service_name,
            ", ".join(sub_in.event_types),
        )
        return subscription_id

    async def get_subscription(self, subscription_id: str) -> Subscription:
        row = await self._db.fetchone(
            f"SELECT {_COLUMNS} FROM subscriptions WHERE subscription_id = ?",
            (subscription_id,),
        )
        if row is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return _row_to_subscription(row)

    async def list_subscriptions(
        self,
        service_name: str | None = None,
        event_type: str | None = None,
        include_inactive: bool = False,
    ) -> list[Subscription]:
        """List subscriptions, optionally only those owned by service_name or matching event_type."""
        sql = f"SELECT {_COLUMNS} FROM subscriptions"
        clauses: list[str] = []
        params: list[Any] = []
        if not include_inactive:
            clauses.append("active = 1")
        if service_name is not None:
            clauses.append("service_name = ?")
            params.append(service_name)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at"
        subs = [_row_to_subscription(r) for r in await self._db.fetchall(sql, params)]
        if event_type is not None:
            subs = [s for s in subs if matches_event_type(event_type, s.event_types)]
        return subs

    async def delete_subscription(self, subscription_id: str) -> None:
        """Soft-delete: active=0. Raises NotFoundError for unknown ids; repeat deletes are no-ops."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT service_name, active FROM subscriptions WHERE subscription_id = ?",
                (subscription_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"Subscription {subscription_id} not found")
            if row[1]:
                await conn.execute(
                    """
                    UPDATE subscriptions SET active = 0, deleted_at = ?
                    WHERE subscription_id = ?
                    """,
                    (time.time(), subscription_id),
                )
        self.invalidate()
        logger.info("Subscription %s deleted (%s)", subscription_id, row[0])

    def invalidate(self) -> None:
        """Force the next match to reload the snapshot."""
        self._loaded_at = None

    async def _active_snapshot(self) -> list[Subscription]:
        now = time.monotonic()
        if self._loaded_at is not None and now - self._loaded_at < self._refresh_interval:
            return self._snapshot
        async with self._refresh_lock:
            loaded_at = self._loaded_at
            if loaded_at is None or time.monotonic() - loaded_at >= self._refresh_interval:
                self._snapshot = await self.list_subscriptions()
                self._loaded_at = time.monotonic()
        return self._snapshot

    async def match_subscriptions(self, event: Event) -> list[Subscription]:
        """All active subscriptions whose event_types and filter_criteria match. Unordered."""
        return [s for s in await self._active_snapshot() if subscription_matches(s, event)]
