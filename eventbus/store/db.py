"""SQLite storage for the Event Bus: events, status log, delivery attempts, subscriptions."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    sequence        INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        TEXT    NOT NULL UNIQUE,
    event_type      TEXT    NOT NULL,
    data            TEXT    NOT NULL,
    source_service  TEXT    NOT NULL,
    correlation_id  TEXT,
    priority        INTEGER NOT NULL DEFAULT 5,
    created_by      TEXT,
    status          TEXT    NOT NULL DEFAULT 'accepted',
    delivery_round  INTEGER NOT NULL DEFAULT 0,
    created_at      REAL    NOT NULL,
    updated_at      REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_type_created ON events(event_type, created_at);
CREATE INDEX IF NOT EXISTS idx_events_source_created ON events(source_service, created_at);
CREATE INDEX IF NOT EXISTS idx_events_status_updated ON events(status, updated_at);
CREATE INDEX IF NOT EXISTS idx_events_correlation ON events(correlation_id, sequence);

CREATE TABLE IF NOT EXISTS event_status_log (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id     TEXT NOT NULL REFERENCES events(event_id),
    from_status  TEXT,
    to_status    TEXT NOT NULL,
    changed_at   REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_esl_event ON event_status_log(event_id, id);

CREATE TABLE IF NOT EXISTS delivery_attempts (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id              TEXT    NOT NULL REFERENCES events(event_id),
    subscription_id       TEXT    NOT NULL REFERENCES subscriptions(subscription_id),
    attempt_number        INTEGER NOT NULL,
    delivery_round        INTEGER NOT NULL DEFAULT 0,
    outcome               TEXT    NOT NULL,
    http_status_or_error  TEXT    NOT NULL DEFAULT '',
    duration_ms           INTEGER NOT NULL DEFAULT 0,
    attempted_at          REAL    NOT NULL,
    UNIQUE (event_id, subscription_id, attempt_number)
);

CREATE INDEX IF NOT EXISTS idx_da_attempted ON delivery_attempts(attempted_at);

CREATE TABLE IF NOT EXISTS subscriptions (
    subscription_id  TEXT    PRIMARY KEY,
    event_types      TEXT    NOT NULL,
    callback_url     TEXT    NOT NULL,
    service_name     TEXT    NOT NULL,
    filter_criteria  TEXT,
    created_by       TEXT,
    active           INTEGER NOT NULL DEFAULT 1,
    created_at       REAL    NOT NULL,
    deleted_at       REAL
);

CREATE INDEX IF NOT EXISTS idx_subs_service ON subscriptions(service_name, active);
"""


def json_dumps(obj: Any) -> str:
    """Serialize to JSON for DB storage; Unicode is stored as-is."""
    return json.dumps(obj, ensure_ascii=False)


def json_loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class Database:
    """SQLite database shared by the Event Store and Subscription Registry. One connection per instance.

    Writes go through transaction(): an asyncio lock keeps statements of concurrent
    coroutines from interleaving inside one transaction on the shared connection.
    """

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._db_path

    async def ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialized write transaction: commit on success, rollback on error."""
        conn = await self.ensure_conn()
        async with self._write_lock:
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    async def fetchone(self, sql: str, params: tuple | list = ()) -> tuple | None:
        conn = await self.ensure_conn()
        cursor = await conn.execute(sql, params)
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | list = ()) -> list[tuple]:
        conn = await self.ensure_conn()
        cursor = await conn.execute(sql, params)
        return list(await cursor.fetchall())

    async def ping(self) -> bool:
        try:
            await self.fetchone("SELECT 1")
            return True
        except (aiosqlite.Error, OSError) as e:
            logger.warning("Database ping failed for %s: %s", self._db_path, e)
            return False

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
