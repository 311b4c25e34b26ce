"""
cache/store.py -- Ephemeral key/value stores with a per-key TTL.

Two backends share one interface (get / set / delete):
  TTLCache    -- SQLite-backed, survives restarts, shared between processes
                 that point at the same file.
  MemoryCache -- process-local dict guarded by a lock. Used by tests and by
                 single-process deployments.

Every write carries an expiry in seconds; there is no unbounded entry. Expired
rows are dropped lazily on read, and purge_expired() trims the rest.

Usage:
    cache = TTLCache()
    cache.set("NC_T42", "482917", 900)
    cache.get("NC_T42")            # "482917" or None once expired
    cache.purge_expired()          # call periodically to trim old entries
"""

import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

_DEFAULT_DB = Path(__file__).parent / "codegate_cache.db"

_DDL = """
CREATE TABLE IF NOT EXISTS kv_cache (
    cache_key   TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class Cache(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


def _check_ttl(ttl_seconds: int) -> None:
    if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
        raise ValueError(f"ttl_seconds must be a positive integer, got {ttl_seconds!r}")


class TTLCache:
    def __init__(self, db_path: Path | str = _DEFAULT_DB) -> None:
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> Optional[str]:
        """Return the value for key if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value, expires_at FROM kv_cache WHERE cache_key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        value, expires_at = row
        if time.time() >= expires_at:
            self.delete(key)
            return None
        return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store value for key with a mandatory expiry, replacing any existing entry."""
        _check_ttl(ttl_seconds)
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_cache (cache_key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, time.time() + ttl_seconds),
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv_cache WHERE cache_key = ?", (key,))
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM kv_cache WHERE expires_at <= ?", (time.time(),))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()


class MemoryCache:
    """In-process TTL cache. clock is injectable so tests can move time forward."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        _check_ttl(ttl_seconds)
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [k for k, (_, exp) in self._data.items() if now >= exp]
            for k in stale:
                del self._data[k]
        return len(stale)

    def keys(self) -> list[str]:
        """Return the raw stored keys (for inspection in tests and tooling)."""
        with self._lock:
            return list(self._data)
