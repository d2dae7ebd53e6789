"""
Time-Expiring In-Memory Cache

Entries carry an absolute expiry instant. Expired entries are invisible to
lookups even before the periodic sweep removes them, so the sweep only
bounds memory.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class TTLCache(Generic[T]):
    """
    String-keyed cache of CacheEntry values.

    Args:
        default_ttl: Lifetime used when put() is called without a ttl
        clock: Returns the current time
    """

    def __init__(self, default_ttl: timedelta, clock: Callable[[], datetime]):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry[T]] = {}

    def get(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry.data

    def put(self, key: str, value: T, ttl: Optional[timedelta] = None) -> None:
        self._entries[key] = CacheEntry(value, self._clock() + (ttl if ttl is not None else self.default_ttl))

    def put_until(self, key: str, value: T, expires_at: datetime) -> None:
        self._entries[key] = CacheEntry(value, expires_at)

    def invalidate(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
