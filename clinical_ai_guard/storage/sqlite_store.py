"""
SQLite-backed shared store.

Lets every worker process on one host share counters, cache entries and
alerts through a single database file.
"""

import json
import time
from typing import Any, Callable, List

from .db import DEFAULT_DB_PATH, get_connection
from .store import PURGE_INTERVAL, KeyValueStore


def _encode(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _decode(raw: Any) -> Any:
    return json.loads(raw) if isinstance(raw, str) else raw


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the kv_store table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_kv_store_expires ON kv_store (expires_at)")
        conn.commit()
    finally:
        conn.close()


class SqliteStore(KeyValueStore):
    """Shared store persisted in SQLite.

    Each operation is a single statement, so atomicity comes from SQLite's
    write lock rather than from any in-process state.

    Writes also delete expired rows, at most once per ``purge_interval``
    seconds per store instance.
    """

    supports_patterns = True

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Callable[[], float] = time.time,
        purge_interval: float = PURGE_INTERVAL,
    ):
        self.db_path = db_path
        self._clock = clock
        self._purge_interval = purge_interval
        self._last_purge = clock()
        initialize_schema(db_path)

    def _purge_if_due(self, conn, now: float) -> None:
        if now - self._last_purge >= self._purge_interval:
            conn.execute("DELETE FROM kv_store WHERE expires_at <= ?", (now,))
            self._last_purge = now

    def get(self, key: str, default: Any = None) -> Any:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ? AND expires_at > ?",
                (key, self._clock()),
            ).fetchone()
            return default if row is None else _decode(row[0])
        finally:
            conn.close()

    def put(self, key: str, value: Any, ttl: int) -> None:
        now = self._clock()
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)",
                (key, _encode(value), now + ttl),
            )
            self._purge_if_due(conn, now)
            conn.commit()
        finally:
            conn.close()

    def forget(self, key: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM kv_store WHERE key = ? AND expires_at > ?",
                (key, self._clock()),
            )
            removed = cursor.rowcount > 0
            # Expired leftovers go too
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
            return removed
        finally:
            conn.close()

    def increment_with_ttl(self, key: str, ttl: int, amount: int = 1) -> int:
        now = self._clock()
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                INSERT INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = CASE WHEN kv_store.expires_at <= ?
                                 THEN excluded.value
                                 ELSE CAST(kv_store.value AS INTEGER) + ? END,
                    expires_at = CASE WHEN kv_store.expires_at <= ?
                                      THEN excluded.expires_at
                                      ELSE kv_store.expires_at END
                RETURNING value
            """, (key, str(amount), now + ttl, now, amount, now)).fetchone()
            self._purge_if_due(conn, now)
            conn.commit()
            return int(row[0])
        finally:
            conn.close()

    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: int) -> bool:
        now = self._clock()
        conn = get_connection(self.db_path)
        try:
            if expected is None:
                cursor = conn.execute("""
                    INSERT INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        expires_at = excluded.expires_at
                    WHERE kv_store.expires_at <= ?
                """, (key, _encode(new), now + ttl, now))
            else:
                cursor = conn.execute("""
                    UPDATE kv_store SET value = ?, expires_at = ?
                    WHERE key = ? AND value = ? AND expires_at > ?
                """, (_encode(new), now + ttl, key, _encode(expected), now))
            swapped = cursor.rowcount > 0
            self._purge_if_due(conn, now)
            conn.commit()
            return swapped
        finally:
            conn.close()

    def keys_matching(self, pattern: str) -> List[str]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT key FROM kv_store WHERE key GLOB ? AND expires_at > ? ORDER BY key",
                (pattern, self._clock()),
            ).fetchall()
            return [row[0] for row in rows]
        finally:
            conn.close()

    def purge_expired(self) -> int:
        """Delete expired rows and return how many were removed."""
        conn = get_connection(self.db_path)
        try:
            now = self._clock()
            cursor = conn.execute("DELETE FROM kv_store WHERE expires_at <= ?", (now,))
            conn.commit()
            self._last_purge = now
            return cursor.rowcount
        finally:
            conn.close()
