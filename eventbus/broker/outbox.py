"""Polling outbox table broker: durable dispatch queue in SQLite."""

import asyncio
import logging
import sqlite3
import time
from pathlib import Path

import aiosqlite

from eventbus.broker.base import BrokerMessage
from eventbus.errors import TransportError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id      TEXT    NOT NULL,
    body          TEXT    NOT NULL,
    priority      INTEGER NOT NULL DEFAULT 5,
    state         TEXT    NOT NULL DEFAULT 'pending',
    available_at  REAL    NOT NULL,
    claimed_at    REAL,
    deliveries    INTEGER NOT NULL DEFAULT 0,
    enqueued_at   REAL    NOT NULL,
    acked_at      REAL
);

CREATE INDEX IF NOT EXISTS idx_outbox_claim ON outbox(state, priority DESC, id);
CREATE INDEX IF NOT EXISTS idx_outbox_event ON outbox(event_id);
"""


class OutboxBroker:
    """SQLite-backed outbox. One connection per instance, one consuming dispatcher per file.

    Claimed rows carry a lease: a row claimed longer than lease_timeout ago is handed
    out again. start() returns every claimed row to pending (previous run crashed or
    stopped without acking).
    """

    def __init__(
        self,
        db_path: Path,
        poll_interval: float = 1.0,
        lease_timeout: float = 900.0,
        busy_timeout: int = 5000,
    ) -> None:
        self._db_path = db_path
        self._poll_interval = poll_interval
        self._lease_timeout = lease_timeout
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = await aiosqlite.connect(str(self._db_path))
                await self._conn.execute("PRAGMA journal_mode=WAL")
                await self._conn.execute("PRAGMA synchronous=NORMAL")
                await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
                await self._conn.executescript(_SCHEMA)
                await self._conn.commit()
            except (sqlite3.Error, OSError) as e:
                self._conn = None
                raise TransportError(f"Outbox unavailable at {self._db_path}: {e}") from e
        return self._conn

    async def start(self) -> None:
        conn = await self._ensure_conn()
        async with self._lock:
            cursor = await conn.execute(
                "UPDATE outbox SET state = 'pending', claimed_at = NULL WHERE state = 'claimed'"
            )
            await conn.commit()
        if cursor.rowcount:
            logger.info("Outbox: returned %d unacknowledged messages to pending", cursor.rowcount)

    async def enqueue(self, message: BrokerMessage) -> None:
        now = time.time()
        try:
            conn = await self._ensure_conn()
            async with self._lock:
                await conn.execute(
                    """
                    INSERT INTO outbox (event_id, body, priority, state, available_at, enqueued_at)
                    VALUES (?, ?, ?, 'pending', ?, ?)
                    """,
                    (message.event_id, message.to_json(), message.priority, now, now),
                )
                await conn.commit()
        except sqlite3.Error as e:
            raise TransportError(f"Outbox enqueue failed for {message.event_id}: {e}") from e
        self._wake.set()

    async def _claim_next(self) -> BrokerMessage | None:
        """Atomically claim the highest-priority, oldest available row."""
        conn = await self._ensure_conn()
        now = time.time()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = await conn.execute(
                    """
                    SELECT id, body FROM outbox
                    WHERE (state = 'pending' AND available_at <= ?)
                       OR (state = 'claimed' AND claimed_at < ?)
                    ORDER BY priority DESC, id
                    LIMIT 1
                    """,
                    (now, now - self._lease_timeout),
                )
                row = await cursor.fetchone()
                if row is not None:
                    await conn.execute(
                        """
                        UPDATE outbox SET state = 'claimed', claimed_at = ?,
                            deliveries = deliveries + 1
                        WHERE id = ?
                        """,
                        (now, row[0]),
                    )
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise
        if row is None:
            return None
        return BrokerMessage.from_json(row[1], delivery_tag=row[0])

    async def consume(self) -> BrokerMessage:
        while True:
            message = await self._claim_next()
            if message is not None:
                return message
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def ack(self, message: BrokerMessage) -> None:
        conn = await self._ensure_conn()
        async with self._lock:
            await conn.execute(
                "UPDATE outbox SET state = 'done', acked_at = ? WHERE id = ?",
                (time.time(), message.delivery_tag),
            )
            await conn.commit()

    async def nack(self, message: BrokerMessage, delay: float = 0.0) -> None:
        conn = await self._ensure_conn()
        async with self._lock:
            await conn.execute(
                """
                UPDATE outbox SET state = 'pending', claimed_at = NULL, available_at = ?
                WHERE id = ?
                """,
                (time.time() + delay, message.delivery_tag),
            )
            await conn.commit()
        if delay <= 0:
            self._wake.set()

    async def pending_count(self) -> int:
        conn = await self._ensure_conn()
        cursor = await conn.execute("SELECT COUNT(*) FROM outbox WHERE state != 'done'")
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def check_connection(self) -> bool:
        try:
            conn = await self._ensure_conn()
            await conn.execute("SELECT 1")
            return True
        except (TransportError, sqlite3.Error) as e:
            logger.warning("Outbox connection check failed: %s", e)
            return False

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
