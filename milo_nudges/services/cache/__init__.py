"""
Cache Layer
"""

from milo_nudges.services.cache.ttl_cache import CacheEntry, TTLCache
from milo_nudges.services.cache.key_value import KeyValueStore, RedisKeyValueStore, SqliteKeyValueStore
from milo_nudges.services.cache.persisted import PersistedNudgeCache

__all__ = [
    "CacheEntry",
    "TTLCache",
    "KeyValueStore",
    "RedisKeyValueStore",
    "SqliteKeyValueStore",
    "PersistedNudgeCache",
]
