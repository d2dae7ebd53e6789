"""
Persisted Key-Value Stores

Synchronous string/integer stores that survive process restarts. Two
backends: a local SQLite file and Redis (calls guarded by the "redis"
circuit breaker).
"""

import pathlib
import sqlite3
from abc import ABC, abstractmethod
from typing import List, Optional, Union

import redis
import structlog

from milo_nudges.services.monitoring.circuit_breakers import with_circuit_breaker

logger = structlog.get_logger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_cache (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class KeyValueStore(ABC):
    """Persisted string and integer values by key."""

    def open(self) -> None:
        """Acquire the underlying connection; safe to call more than once."""

    @abstractmethod
    def get_string(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_string(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        ...

    def get_int(self, key: str) -> Optional[int]:
        value = self.get_string(key)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning("kv_int_corrupt", key=key)
            return None

    def set_int(self, key: str, value: int) -> None:
        self.set_string(key, str(int(value)))

    def close(self) -> None:
        """Release the underlying connection."""


class SqliteKeyValueStore(KeyValueStore):
    """
    Key-value store in a single SQLite table.

    Args:
        db_path: Database file, or ":memory:" for a throwaway store
    """

    def __init__(self, db_path: Union[pathlib.Path, str]):
        self.db_path = str(db_path)
        self._conn: Optional[sqlite3.Connection] = None

    def open(self) -> None:
        if self._conn is not None:
            return
        if self.db_path != ":memory:":
            pathlib.Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=5, check_same_thread=False)
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA)
        conn.commit()
        self._conn = conn
        logger.info("sqlite_kv_opened", path=self.db_path)

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.open()
        return self._conn

    def get_string(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM kv_cache WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_string(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT INTO kv_cache (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        self.conn.commit()

    def remove(self, key: str) -> None:
        self.conn.execute("DELETE FROM kv_cache WHERE key = ?", (key,))
        self.conn.commit()

    def keys(self, prefix: str = "") -> List[str]:
        rows = self.conn.execute(
            "SELECT key FROM kv_cache WHERE substr(key, 1, length(?)) = ?",
            (prefix, prefix),
        ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class RedisKeyValueStore(KeyValueStore):
    """
    Key-value store on Redis.

    Args:
        redis_url: Connection URL, used when no client is given
        client: Pre-built redis.Redis client
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is None and not redis_url:
            raise ValueError("redis_url is required when no client is given")
        self.redis_url = redis_url
        self._client = client

    def open(self) -> None:
        if self._client is None:
            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
            logger.info("redis_kv_opened")

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self.open()
        return self._client

    @with_circuit_breaker("redis")
    def get_string(self, key: str) -> Optional[str]:
        value = self.client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    @with_circuit_breaker("redis")
    def set_string(self, key: str, value: str) -> None:
        self.client.set(key, value)

    @with_circuit_breaker("redis")
    def remove(self, key: str) -> None:
        self.client.delete(key)

    @with_circuit_breaker("redis")
    def keys(self, prefix: str = "") -> List[str]:
        return [
            key.decode("utf-8") if isinstance(key, bytes) else key
            for key in self.client.scan_iter(match=f"{prefix}*")
        ]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
