"""Event Store: durable record of accepted events, their status history and delivery attempts."""

import logging
import time
import uuid
from typing import Any, NamedTuple

from eventbus.models import (
    ALLOWED_TRANSITIONS,
    OPEN_STATUSES,
    AttemptOutcome,
    DeliveryAttempt,
    Event,
    EventIn,
    EventStatus,
)
from eventbus.store.db import Database, json_dumps, json_loads

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = (
    "event_id, event_type, data, source_service, correlation_id, priority, created_by, "
    "status, sequence, delivery_round, created_at, updated_at"
)

_ATTEMPT_COLUMNS = (
    "event_id, subscription_id, attempt_number, outcome, http_status_or_error, "
    "attempted_at, delivery_round, duration_ms"
)


class RoundProgress(NamedTuple):
    """Attempts one subscription has had for an event within one delivery round."""

    attempts: int
    succeeded: bool
    last_attempted_at: float | None


def _row_to_event(row: tuple) -> Event:
    return Event(
        event_id=row[0],
        event_type=row[1],
        data=json_loads(row[2]),
        source_service=row[3],
        correlation_id=row[4],
        priority=row[5],
        created_by=row[6],
        status=EventStatus(row[7]),
        sequence=row[8],
        delivery_round=row[9],
        created_at=row[10],
        updated_at=row[11],
    )


def _row_to_attempt(row: tuple) -> DeliveryAttempt:
    return DeliveryAttempt(
        event_id=row[0],
        subscription_id=row[1],
        attempt_number=row[2],
        outcome=AttemptOutcome(row[3]),
        http_status_or_error=row[4],
        attempted_at=row[5],
        delivery_round=row[6],
        duration_ms=row[7],
    )


class EventStore:
    """Owns Event and Delivery Attempt records. event_type, source_service and data never change."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def insert_event(self, event_in: EventIn) -> Event:
        """Persist a validated event with status=accepted. event_id is assigned here, once."""
        event_id = str(uuid.uuid4())
        now = time.time()
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO events (event_id, event_type, data, source_service, correlation_id,
                    priority, created_by, status, delivery_round, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'accepted', 0, ?, ?)
                """,
                (
                    event_id,
                    event_in.event_type,
                    json_dumps(event_in.data),
                    event_in.source_service,
                    event_in.correlation_id,
                    event_in.priority,
                    event_in.created_by,
                    now,
                    now,
                ),
            )
            sequence = cursor.lastrowid or 0
            await conn.execute(
                """
                INSERT INTO event_status_log (event_id, from_status, to_status, changed_at)
                VALUES (?, NULL, 'accepted', ?)
                """,
                (event_id, now),
            )
        return Event(
            event_id=event_id,
            event_type=event_in.event_type,
            data=event_in.data,
            source_service=event_in.source_service,
            correlation_id=event_in.correlation_id,
            priority=event_in.priority,
            created_by=event_in.created_by,
            status=EventStatus.ACCEPTED,
            sequence=sequence,
            delivery_round=0,
            created_at=now,
            updated_at=now,
        )

    async def get_event(self, event_id: str) -> Event | None:
        row = await self._db.fetchone(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE event_id = ?", (event_id,)
        )
        return _row_to_event(row) if row else None

    async def advance_status(self, event_id: str, to_status: EventStatus) -> bool:
        """Move the event forward through the state machine.

        Returns False (and changes nothing) when the transition is not allowed from
        the current status. Every applied transition is appended to event_status_log.
        """
        allowed = ALLOWED_TRANSITIONS.get(to_status, ())
        now = time.time()
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT status FROM events WHERE event_id = ?", (event_id,)
            )
            row = await cursor.fetchone()
            if row is None or row[0] not in allowed:
                return False
            await conn.execute(
                "UPDATE events SET status = ?, updated_at = ? WHERE event_id = ? AND status = ?",
                (str(to_status), now, event_id, row[0]),
            )
            await conn.execute(
                """
                INSERT INTO event_status_log (event_id, from_status, to_status, changed_at)
                VALUES (?, ?, ?, ?)
                """,
                (event_id, row[0], str(to_status), now),
            )
        return True

    async def touch(self, event_id: str) -> None:
        """Bump updated_at so the recovery scan treats the event as live."""
        async with self._db.transaction() as conn:
            await conn.execute(
                "UPDATE events SET updated_at = ? WHERE event_id = ?", (time.time(), event_id)
            )

    async def status_history(self, event_id: str) -> list[dict[str, Any]]:
        rows = await self._db.fetchall(
            """
            SELECT from_status, to_status, changed_at FROM event_status_log
            WHERE event_id = ? ORDER BY id
            """,
            (event_id,),
        )
        return [{"from_status": r[0], "to_status": r[1], "changed_at": r[2]} for r in rows]

    async def begin_round(self, event_id: str) -> int:
        """Start a new delivery round (replay). Returns the new round number."""
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                UPDATE events SET delivery_round = delivery_round + 1, updated_at = ?
                WHERE event_id = ?
                """,
                (time.time(), event_id),
            )
            cursor = await conn.execute(
                "SELECT delivery_round FROM events WHERE event_id = ?", (event_id,)
            )
            row = await cursor.fetchone()
        return row[0] if row else 0

    # --- Delivery attempts ---

    async def record_attempt(
        self,
        event_id: str,
        subscription_id: str,
        outcome: AttemptOutcome,
        detail: str,
        delivery_round: int = 0,
        duration_ms: int = 0,
    ) -> DeliveryAttempt:
        """Append a Delivery Attempt. attempt_number is next in sequence for (event, subscription)."""
        now = time.time()
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                SELECT COALESCE(MAX(attempt_number), 0) + 1 FROM delivery_attempts
                WHERE event_id = ? AND subscription_id = ?
                """,
                (event_id, subscription_id),
            )
            row = await cursor.fetchone()
            attempt_number = row[0] if row else 1
            await conn.execute(
                f"""
                INSERT INTO delivery_attempts ({_ATTEMPT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id,
                    subscription_id,
                    attempt_number,
                    str(outcome),
                    detail,
                    now,
                    delivery_round,
                    duration_ms,
                ),
            )
            await conn.execute(
                "UPDATE events SET updated_at = ? WHERE event_id = ?", (now, event_id)
            )
        return DeliveryAttempt(
            event_id=event_id,
            subscription_id=subscription_id,
            attempt_number=attempt_number,
            outcome=outcome,
            http_status_or_error=detail,
            attempted_at=now,
            delivery_round=delivery_round,
            duration_ms=duration_ms,
        )

    async def list_attempts(
        self,
        event_id: str,
        subscription_id: str | None = None,
        delivery_round: int | None = None,
    ) -> list[DeliveryAttempt]:
        sql = f"SELECT {_ATTEMPT_COLUMNS} FROM delivery_attempts WHERE event_id = ?"
        params: list[Any] = [event_id]
        if subscription_id is not None:
            sql += " AND subscription_id = ?"
            params.append(subscription_id)
        if delivery_round is not None:
            sql += " AND delivery_round = ?"
            params.append(delivery_round)
        sql += " ORDER BY subscription_id, attempt_number"
        rows = await self._db.fetchall(sql, params)
        return [_row_to_attempt(r) for r in rows]

    async def round_progress(
        self, event_id: str, subscription_id: str, delivery_round: int
    ) -> RoundProgress:
        row = await self._db.fetchone(
            """
            SELECT COUNT(*), COALESCE(SUM(outcome = 'success'), 0), MAX(attempted_at)
            FROM delivery_attempts
            WHERE event_id = ? AND subscription_id = ? AND delivery_round = ?
            """,
            (event_id, subscription_id, delivery_round),
        )
        if row is None:
            return RoundProgress(0, False, None)
        return RoundProgress(row[0], bool(row[1]), row[2])

    # --- Recovery ---

    async def find_unfinished(self, stale_before: float, limit: int = 100) -> list[Event]:
        """Events still accepted/dispatched/failed and untouched since stale_before."""
        placeholders = ",".join("?" * len(OPEN_STATUSES))
        rows = await self._db.fetchall(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE status IN ({placeholders}) AND updated_at <= ?
            ORDER BY sequence
            LIMIT ?
            """,
            [*(str(s) for s in OPEN_STATUSES), stale_before, limit],
        )
        return [_row_to_event(r) for r in rows]

    async def open_predecessors(self, correlation_id: str, sequence: int) -> list[str]:
        """Ids of earlier events in the same correlation chain that are not yet terminal."""
        placeholders = ",".join("?" * len(OPEN_STATUSES))
        rows = await self._db.fetchall(
            f"""
            SELECT event_id FROM events
            WHERE correlation_id = ? AND sequence < ? AND status IN ({placeholders})
            ORDER BY sequence
            """,
            [correlation_id, sequence, *(str(s) for s in OPEN_STATUSES)],
        )
        return [r[0] for r in rows]

    # --- Read-only queries for history and stats ---

    async def query_events(
        self,
        *,
        event_type: str | None = None,
        source_service: str | None = None,
        status: str | None = None,
        correlation_id: str | None = None,
        created_from: float | None = None,
        created_to: float | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Event]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("event_type", event_type),
            ("source_service", source_service),
            ("status", status),
            ("correlation_id", correlation_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if created_from is not None:
            clauses.append("created_at >= ?")
            params.append(created_from)
        if created_to is not None:
            clauses.append("created_at <= ?")
            params.append(created_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._db.fetchall(
            f"SELECT {_EVENT_COLUMNS} FROM events {where} ORDER BY sequence LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return [_row_to_event(r) for r in rows]

    async def count_events_by(self, column: str, since: float) -> dict[str, int]:
        """Group events created since `since` by one of event_type/source_service/status."""
        if column not in ("event_type", "source_service", "status"):
            raise ValueError(f"Cannot group events by {column!r}")
        rows = await self._db.fetchall(
            f"""
            SELECT {column}, COUNT(*) FROM events WHERE created_at >= ?
            GROUP BY {column} ORDER BY {column}
            """,
            (since,),
        )
        return {r[0]: r[1] for r in rows}

    async def count_attempts_by_outcome(self, since: float) -> dict[str, int]:
        rows = await self._db.fetchall(
            """
            SELECT outcome, COUNT(*) FROM delivery_attempts WHERE attempted_at >= ?
            GROUP BY outcome
            """,
            (since,),
        )
        return {r[0]: r[1] for r in rows}
