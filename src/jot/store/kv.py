"""Key-value backends.

Plain get/put/delete, no transactions and no compare-and-set. Callers that
share a key across overlapping runs must tolerate lost updates.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Protocol

import anyio

from .keys import Key

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);
"""


class KeyValueStore(Protocol):
    """Async string key-value store addressed by typed keys."""

    async def get(self, key: Key) -> str | None: ...

    async def put(self, key: Key, value: str) -> None: ...

    async def delete(self, key: Key) -> None: ...


class MemoryStore:
    """In-process store, used by tests and dry runs."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: Key) -> str | None:
        return self.data.get(key.render())

    async def put(self, key: Key, value: str) -> None:
        self.data[key.render()] = value

    async def delete(self, key: Key) -> None:
        self.data.pop(key.render(), None)


class SqliteStore:
    """Single-table SQLite store shared by every trigger invocation."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path).expanduser()
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    def _connect(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=5.0, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        conn.executescript(SCHEMA_SQL)
        self._conn = conn
        return conn

    def _get(self, raw: str) -> str | None:
        with self._lock:
            row = self._connect().execute(
                "SELECT value FROM kv WHERE key = ?", (raw,)
            ).fetchone()
        return row[0] if row else None

    def _put(self, raw: str, value: str) -> None:
        with self._lock:
            conn = self._connect()
            conn.execute(
                """INSERT INTO kv (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                     value=excluded.value,
                     updated_at=datetime('now')""",
                (raw, value),
            )
            conn.commit()

    def _delete(self, raw: str) -> None:
        with self._lock:
            conn = self._connect()
            conn.execute("DELETE FROM kv WHERE key = ?", (raw,))
            conn.commit()

    async def get(self, key: Key) -> str | None:
        return await anyio.to_thread.run_sync(self._get, key.render())

    async def put(self, key: Key, value: str) -> None:
        await anyio.to_thread.run_sync(self._put, key.render(), value)

    async def delete(self, key: Key) -> None:
        await anyio.to_thread.run_sync(self._delete, key.render())

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
