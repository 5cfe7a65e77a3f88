"""
Key-value counter stores with TTL and atomic increment.

The counter store is the shared substrate for circuit breaker state and alert
de-duplication markers. Every mutation is a single atomic primitive; callers
never read-then-write a counter themselves.
"""

import json
import sqlite3
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Union

from .db import get_connection

Number = Union[int, float]
Clock = Callable[[], float]


class CounterStore(Protocol):
    """Contract the reliability core requires from a store."""

    def read(self, key: str) -> Any:
        ...

    def write(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def exists(self, key: str) -> bool:
        ...

    def increment(self, key: str, by: Number = 1, ttl: Optional[float] = None) -> Number:
        ...

    def ttl(self, key: str) -> Optional[float]:
        ...


NAMESPACE = "ai_reliability_guard"


def make_key(*parts: object) -> str:
    """Build a namespaced store key.

    Example:
        make_key("cb", "count", "SummaryAgent", "gpt-4o")
        -> "ai_reliability_guard:cb:count:SummaryAgent:gpt-4o"
    """
    return ":".join([NAMESPACE] + [str(part) for part in parts])


class InMemoryCounterStore:
    """Thread-safe in-process store.

    Entries are (value, expires_at) pairs; expired entries are treated as absent
    and dropped lazily on access.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        # Caller must hold the lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    def read(self, key: str) -> Any:
        with self._lock:
            entry = self._live_entry(key)
            return None if entry is None else entry[0]

    def write(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._entries[key] = (value, self._expiry(ttl))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def increment(self, key: str, by: Number = 1, ttl: Optional[float] = None) -> Number:
        """Atomically add ``by`` to the key.

        The TTL is applied only when the key is created; later increments keep
        the original expiry so the count decays with its window.
        """
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                new_value = by
                expires_at = self._expiry(ttl)
            else:
                new_value = entry[0] + by
                expires_at = entry[1]
            self._entries[key] = (new_value, expires_at)
            return new_value

    def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry[1] is None:
                return None
            return max(entry[1] - self._clock(), 0.0)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class SQLiteCounterStore:
    """Counter store backed by the ``counter_entry`` table.

    Shared across threads and processes that point at the same database file.
    Increments run inside ``BEGIN IMMEDIATE`` so the write lock is held from the
    read of the current value until commit.
    """

    def __init__(self, db_path: str = "ai_reliability_guard.db", clock: Clock = time.time):
        self.db_path = db_path
        self._clock = clock

    def _connect(self) -> sqlite3.Connection:
        conn = get_connection(self.db_path)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS counter_entry (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            )
        """)
        return conn

    def _is_live(self, expires_at: Optional[float]) -> bool:
        return expires_at is None or expires_at > self._clock()

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    def read(self, key: str) -> Any:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value, expires_at FROM counter_entry WHERE key = ?", (key,)
            ).fetchone()
            if row is None or not self._is_live(row[1]):
                return None
            return json.loads(row[0])
        finally:
            conn.close()

    def write(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO counter_entry (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
            """, (key, json.dumps(value), self._expiry(ttl)))
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM counter_entry WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def exists(self, key: str) -> bool:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT expires_at FROM counter_entry WHERE key = ?", (key,)
            ).fetchone()
            return row is not None and self._is_live(row[0])
        finally:
            conn.close()

    def increment(self, key: str, by: Number = 1, ttl: Optional[float] = None) -> Number:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT value, expires_at FROM counter_entry WHERE key = ?", (key,)
            ).fetchone()
            if row is None or not self._is_live(row[1]):
                new_value = by
                expires_at = self._expiry(ttl)
            else:
                new_value = json.loads(row[0]) + by
                expires_at = row[1]
            conn.execute("""
                INSERT INTO counter_entry (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
            """, (key, json.dumps(new_value), expires_at))
            conn.commit()
            return new_value
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ttl(self, key: str) -> Optional[float]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT expires_at FROM counter_entry WHERE key = ?", (key,)
            ).fetchone()
            if row is None or row[0] is None or not self._is_live(row[0]):
                return None
            return max(row[0] - self._clock(), 0.0)
        finally:
            conn.close()

    def purge_expired(self) -> int:
        """Delete expired rows. Returns the number removed."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM counter_entry WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()
