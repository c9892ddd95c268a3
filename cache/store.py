"""
cache/store.py -- Keyed TTL stores backing revocation, attempts and captchas.

Every key carries its own independent TTL. Two back-ends share one interface:

  SQLiteTTLStore  -- single-node store on the stdlib sqlite3 module (WAL mode).
                     Expired rows are invisible to reads and deleted lazily;
                     purge_expired() sweeps the rest. The clock is injectable
                     so tests can advance time without sleeping.
  RedisTTLStore   -- shared store for multi-node deployments. TTLs are set in
                     milliseconds (PX) so revocation entries expire exactly
                     when the token they shadow does.

Both translate back-end failures into StoreUnavailableError. Callers choose
fail-open or fail-closed per call site; the store never decides.

Usage:
    store = SQLiteTTLStore()
    store.set("captcha:abc", "<sha256>", ttl=600)
    store.increment("attempts:login:10.0.0.1", ttl=1800)   # -> 1
    store.purge_expired()
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

import redis

from auth.errors import StoreUnavailableError

logger = logging.getLogger("sessionguard.cache")

_DEFAULT_DB = Path(__file__).parent / "sessionguard_ttl.db"

_DDL = """
CREATE TABLE IF NOT EXISTS ttl_entries (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL
);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyedTTLStore(Protocol):
    """Minimal key/value surface with per-key expiry.

    ttl is in seconds (fractions allowed). None means no expiry.
    """

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None: ...

    def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool: ...

    def delete(self, *keys: str) -> int: ...

    def exists(self, key: str) -> bool: ...

    def ttl_remaining(self, key: str) -> Optional[float]: ...

    def increment(self, key: str, ttl: Optional[float] = None) -> int: ...

    def count_prefix(self, prefix: str) -> int: ...

    def purge_expired(self) -> int: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# SQLite back-end
# ---------------------------------------------------------------------------


class SQLiteTTLStore:
    """sqlite3-backed TTL store.

    One connection shared across threads (check_same_thread=False), guarded by
    a lock so each operation is atomic the way a single Redis command is.
    Pass ":memory:" for tests.
    """

    def __init__(
        self,
        db_path: Path | str = _DEFAULT_DB,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)

    def _now(self) -> float:
        return self._clock().timestamp()

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._now() + ttl

    def _live_row(self, key: str):
        """Return (value, expires_at) for a live key, deleting it if it expired."""
        row = self._conn.execute("SELECT value, expires_at FROM ttl_entries WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        if row[1] is not None and row[1] <= self._now():
            self._conn.execute("DELETE FROM ttl_entries WHERE key = ?", (key,))
            return None
        return row

    def get(self, key: str) -> Optional[str]:
        try:
            with self._lock:
                row = self._live_row(key)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"ttl store read failed: {exc}") from exc
        return row[0] if row is not None else None

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO ttl_entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, str(value), self._expiry(ttl)),
                )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"ttl store write failed: {exc}") from exc

    def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        try:
            with self._lock:
                if self._live_row(key) is not None:
                    return False
                self._conn.execute(
                    "INSERT OR REPLACE INTO ttl_entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, str(value), self._expiry(ttl)),
                )
                return True
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"ttl store write failed: {exc}") from exc

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        removed = 0
        try:
            with self._lock:
                for key in keys:
                    live = self._live_row(key) is not None
                    cursor = self._conn.execute("DELETE FROM ttl_entries WHERE key = ?", (key,))
                    if live and cursor.rowcount:
                        removed += 1
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"ttl store delete failed: {exc}") from exc
        return removed

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def ttl_remaining(self, key: str) -> Optional[float]:
        try:
            with self._lock:
                row = self._live_row(key)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"ttl store read failed: {exc}") from exc
        if row is None or row[1] is None:
            return None
        return max(0.0, row[1] - self._now())

    def increment(self, key: str, ttl: Optional[float] = None) -> int:
        """Add one to an integer counter and (re)set its TTL. Missing keys start at 0."""
        try:
            with self._lock:
                row = self._live_row(key)
                current = int(row[0]) if row is not None else 0
                value = current + 1
                if ttl is None and row is not None:
                    expires_at = row[1]
                else:
                    expires_at = self._expiry(ttl)
                self._conn.execute(
                    "INSERT OR REPLACE INTO ttl_entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, str(value), expires_at),
                )
        except (sqlite3.Error, ValueError) as exc:
            raise StoreUnavailableError(f"ttl store increment failed: {exc}") from exc
        return value

    def count_prefix(self, prefix: str) -> int:
        """Number of live keys starting with prefix."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM ttl_entries WHERE substr(key, 1, ?) = ? "
                    "AND (expires_at IS NULL OR expires_at > ?)",
                    (len(prefix), prefix, self._now()),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"ttl store count failed: {exc}") from exc
        return int(row[0])

    def purge_expired(self) -> int:
        """Delete every expired row. Returns number of rows removed."""
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "DELETE FROM ttl_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (self._now(),),
                )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"ttl store purge failed: {exc}") from exc
        return cursor.rowcount

    def ping(self) -> bool:
        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            return False
        return True

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Redis back-end
# ---------------------------------------------------------------------------


def _px(ttl: float) -> int:
    # Redis rejects PX 0; anything that would round to 0 ms gets 1 ms.
    return max(1, int(ttl * 1000))


class RedisTTLStore:
    """Thin Redis wrapper implementing KeyedTTLStore.

    Built from a URL (from_url) or an existing client, which lets tests hand
    in a MagicMock that raises redis.RedisError.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT) -> "RedisTTLStore":
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis GET failed: {exc}") from exc

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        try:
            if ttl is None:
                self.client.set(key, value)
            else:
                self.client.set(key, value, px=_px(ttl))
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis SET failed: {exc}") from exc

    def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        try:
            if ttl is None:
                return bool(self.client.set(key, value, nx=True))
            return bool(self.client.set(key, value, nx=True, px=_px(ttl)))
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis SET NX failed: {exc}") from exc

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self.client.delete(*keys))
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis DEL failed: {exc}") from exc

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis EXISTS failed: {exc}") from exc

    def ttl_remaining(self, key: str) -> Optional[float]:
        try:
            pttl = self.client.pttl(key)
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis PTTL failed: {exc}") from exc
        # -2: missing key, -1: key without expiry
        if pttl is None or pttl < 0:
            return None
        return pttl / 1000.0

    def increment(self, key: str, ttl: Optional[float] = None) -> int:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.incr(key)
            if ttl is not None:
                pipe.pexpire(key, _px(ttl))
            results = pipe.execute()
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis INCR failed: {exc}") from exc
        return int(results[0])

    def count_prefix(self, prefix: str) -> int:
        try:
            return sum(1 for _ in self.client.scan_iter(match=f"{prefix}*", count=500))
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis SCAN failed: {exc}") from exc

    def purge_expired(self) -> int:
        # Redis evicts expired keys itself.
        return 0

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self.client.close()
