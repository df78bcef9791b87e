from __future__ import annotations

from contextlib import closing
import copy
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Protocol


LOGGER = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Transient storage with TTL semantics. Expired keys read as absent."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    def add(self, key: str, value: Any, ttl: float | None = None) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def scan(self, prefix: str) -> list[tuple[str, Any]]: ...

    def replace(self, key: str, expected: Any, value: Any, ttl: float | None = None) -> bool: ...

    def purge_expired(self) -> int: ...


def _expires_at(now: float, ttl: float | None) -> float | None:
    if ttl is None:
        return None
    return now + max(0.0, float(ttl))


class MemoryKeyValueStore:
    """Process-local store; values are deep-copied in and out."""

    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, tuple[Any, float | None]] = {}

    def _live(self, key: str, now: float) -> tuple[Any, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= now:
            self._data.pop(key, None)
            return None
        return entry

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key, self._clock())
            return None if entry is None else copy.deepcopy(entry[0])

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            self._data[key] = (copy.deepcopy(value), _expires_at(self._clock(), ttl))

    def add(self, key: str, value: Any, ttl: float | None = None) -> bool:
        with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._data[key] = (copy.deepcopy(value), _expires_at(now, ttl))
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def scan(self, prefix: str) -> list[tuple[str, Any]]:
        with self._lock:
            now = self._clock()
            keys = sorted(key for key in self._data if key.startswith(prefix))
            rows: list[tuple[str, Any]] = []
            for key in keys:
                entry = self._live(key, now)
                if entry is not None:
                    rows.append((key, copy.deepcopy(entry[0])))
            return rows

    def replace(self, key: str, expected: Any, value: Any, ttl: float | None = None) -> bool:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None or entry[0] != expected:
                return False
            self._data[key] = (copy.deepcopy(value), _expires_at(now, ttl))
            return True

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [
                key for key, (_value, expires_at) in self._data.items() if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._data[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for key in list(self._data) if self._live(key, now) is not None)


class SqliteKeyValueStore:
    """Embedded store shared between processes through one sqlite file."""

    def __init__(self, path: str, *, clock: Callable[[], float] = time.time, timeout_sec: float = 5.0):
        self.path = path
        self.timeout_sec = timeout_sec
        self._clock = clock
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        path = Path(self.path).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(path, timeout=self.timeout_sec)

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
                """
            )
            conn.commit()

    @staticmethod
    def _decode(key: str, raw: str) -> Any | None:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Dropping undecodable kv value: key=%s", key)
            return None

    def get(self, key: str) -> Any | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT value FROM kv WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, self._clock()),
            ).fetchone()
        if row is None:
            return None
        return self._decode(key, row[0])

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with closing(self._connect()) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv(key, value, expires_at) VALUES(?,?,?)",
                (key, payload, _expires_at(self._clock(), ttl)),
            )
            conn.commit()

    def add(self, key: str, value: Any, ttl: float | None = None) -> bool:
        payload = json.dumps(value, ensure_ascii=False)
        now = self._clock()
        with closing(self._connect()) as conn:
            conn.execute(
                "DELETE FROM kv WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                (key, now),
            )
            cursor = conn.execute(
                "INSERT OR IGNORE INTO kv(key, value, expires_at) VALUES(?,?,?)",
                (key, payload, _expires_at(now, ttl)),
            )
            conn.commit()
            return cursor.rowcount == 1

    def delete(self, key: str) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0

    def scan(self, prefix: str) -> list[tuple[str, Any]]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT key, value FROM kv WHERE substr(key, 1, ?) = ? "
                "AND (expires_at IS NULL OR expires_at > ?) ORDER BY key",
                (len(prefix), prefix, self._clock()),
            ).fetchall()
        result: list[tuple[str, Any]] = []
        for key, raw in rows:
            value = self._decode(key, raw)
            if value is not None:
                result.append((key, value))
        return result

    def replace(self, key: str, expected: Any, value: Any, ttl: float | None = None) -> bool:
        """Swap the live value only if it still equals ``expected``."""
        payload = json.dumps(value, ensure_ascii=False)
        now = self._clock()
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT value FROM kv WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, now),
            ).fetchone()
            if row is None or self._decode(key, row[0]) != expected:
                conn.rollback()
                return False
            conn.execute(
                "UPDATE kv SET value = ?, expires_at = ? WHERE key = ?",
                (payload, _expires_at(now, ttl), key),
            )
            conn.commit()
            return True

    def purge_expired(self) -> int:
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            )
            conn.commit()
            removed = cursor.rowcount
        if removed:
            LOGGER.debug("Purged expired kv rows: %s", removed)
        return removed
