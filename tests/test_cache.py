"""
Tests for the cache layer.

Tests cover:
- TTLCache expiry and sweeping
- SQLite and Redis key-value stores
- PersistedNudgeCache TTL, key layout and failure tolerance
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pybreaker
import pytest

from milo_nudges.errors import NudgeErrorType
from milo_nudges.services.cache.key_value import RedisKeyValueStore, SqliteKeyValueStore
from milo_nudges.services.cache.persisted import PersistedNudgeCache
from milo_nudges.services.cache.ttl_cache import TTLCache
from milo_nudges.services.error_handler import NudgeErrorHandler
from milo_nudges.services.monitoring import circuit_breakers

from conftest import FakeClock, make_nudge


class TestTTLCache:
    """Tests for TTLCache."""

    def test_get_before_expiry(self):
        cache = TTLCache(timedelta(minutes=15), FakeClock())
        cache.put("a", 1)

        assert cache.get("a") == 1
        assert "a" in cache

    def test_expires_at_ttl(self):
        clock = FakeClock()
        cache = TTLCache(timedelta(minutes=15), clock)
        cache.put("a", 1)

        clock.advance(minutes=14, seconds=59)
        assert cache.get("a") == 1

        clock.advance(seconds=1)
        assert cache.get("a") is None
        assert "a" not in cache

    def test_per_entry_ttl(self):
        clock = FakeClock()
        cache = TTLCache(timedelta(minutes=15), clock)
        cache.put("short", 1, ttl=timedelta(minutes=5))
        cache.put("long", 2)

        clock.advance(minutes=5)

        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_put_until(self):
        clock = FakeClock()
        cache = TTLCache(timedelta(minutes=15), clock)
        cache.put_until("a", 1, clock() + timedelta(minutes=1))

        clock.advance(minutes=1)

        assert cache.get("a") is None

    def test_zero_ttl_expires_immediately(self):
        cache = TTLCache(timedelta(minutes=15), FakeClock())
        cache.put("a", 1, ttl=timedelta(0))

        assert cache.get("a") is None

    def test_falsy_values_are_hits(self):
        cache = TTLCache(timedelta(minutes=15), FakeClock())
        cache.put("empty", [])

        assert cache.get("empty") == []

    def test_invalidate_and_clear(self):
        cache = TTLCache(timedelta(minutes=15), FakeClock())
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("c", 3)

        cache.invalidate("a", "missing")
        assert len(cache) == 2

        cache.clear()
        assert len(cache) == 0

    def test_purge_expired(self):
        clock = FakeClock()
        cache = TTLCache(timedelta(minutes=15), clock)
        cache.put("old", 1, ttl=timedelta(minutes=1))
        cache.put("new", 2)

        clock.advance(minutes=2)

        assert cache.purge_expired() == 1
        assert len(cache) == 1


class TestSqliteKeyValueStore:
    """Tests for SqliteKeyValueStore."""

    @pytest.fixture
    def kv(self, tmp_path):
        store = SqliteKeyValueStore(tmp_path / "cache" / "kv.sqlite3")
        store.open()
        yield store
        store.close()

    def test_set_get_overwrite(self, kv):
        kv.set_string("a", "1")
        kv.set_string("a", "2")

        assert kv.get_string("a") == "2"
        assert kv.get_string("missing") is None

    def test_ints(self, kv):
        kv.set_int("n", 42)

        assert kv.get_int("n") == 42
        assert kv.get_int("missing") is None

    def test_corrupt_int_reads_as_missing(self, kv):
        kv.set_string("n", "not a number")

        assert kv.get_int("n") is None

    def test_remove(self, kv):
        kv.set_string("a", "1")
        kv.remove("a")
        kv.remove("never-set")

        assert kv.get_string("a") is None

    def test_keys_by_prefix(self, kv):
        kv.set_string("nudge_cache_a", "1")
        kv.set_string("nudge_cache_b", "2")
        kv.set_string("nudge_cacheXc", "3")
        kv.set_string("other", "4")

        assert sorted(kv.keys("nudge_cache_")) == ["nudge_cache_a", "nudge_cache_b"]
        assert len(kv.keys()) == 4

    def test_values_survive_reopen(self, tmp_path):
        path = tmp_path / "kv.sqlite3"
        first = SqliteKeyValueStore(path)
        first.open()
        first.set_string("a", "1")
        first.close()

        second = SqliteKeyValueStore(path)
        second.open()
        try:
            assert second.get_string("a") == "1"
        finally:
            second.close()

    def test_in_memory_database(self):
        kv = SqliteKeyValueStore(":memory:")
        kv.open()
        kv.set_string("a", "1")

        assert kv.get_string("a") == "1"
        kv.close()


class TestRedisKeyValueStore:
    """Tests for RedisKeyValueStore against a mocked client."""

    @pytest.fixture
    def client(self):
        return MagicMock()

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisKeyValueStore()

    def test_get_decodes_bytes(self, client):
        client.get.return_value = b"payload"
        kv = RedisKeyValueStore(client=client)

        assert kv.get_string("a") == "payload"
        client.get.assert_called_once_with("a")

    def test_set_and_remove(self, client):
        kv = RedisKeyValueStore(client=client)

        kv.set_string("a", "1")
        kv.remove("a")

        client.set.assert_called_once_with("a", "1")
        client.delete.assert_called_once_with("a")

    def test_keys_scan_by_prefix(self, client):
        client.scan_iter.return_value = iter([b"nudge_cache_a", "nudge_cache_b"])
        kv = RedisKeyValueStore(client=client)

        assert kv.keys("nudge_cache_") == ["nudge_cache_a", "nudge_cache_b"]
        client.scan_iter.assert_called_once_with(match="nudge_cache_*")

    def test_open_breaker_fails_fast(self, client, monkeypatch):
        """Once the breaker opens, Redis is not called until the reset timeout."""
        monkeypatch.setitem(
            circuit_breakers._breakers, "redis", pybreaker.CircuitBreaker(fail_max=1, reset_timeout=60)
        )
        client.get.side_effect = ConnectionError("refused")
        kv = RedisKeyValueStore(client=client)

        with pytest.raises((ConnectionError, pybreaker.CircuitBreakerError)):
            kv.get_string("a")
        with pytest.raises(pybreaker.CircuitBreakerError):
            kv.get_string("a")

        client.get.assert_called_once_with("a")

    def test_close_releases_client(self, client):
        kv = RedisKeyValueStore(client=client)

        kv.close()

        client.close.assert_called_once()


class FailingKeyValueStore(SqliteKeyValueStore):
    """SQLite store whose reads and writes can be switched to fail."""

    def __init__(self):
        super().__init__(":memory:")
        self.broken = False

    def get_string(self, key):
        if self.broken:
            raise OSError("disk gone")
        return super().get_string(key)

    def set_string(self, key, value):
        if self.broken:
            raise OSError("disk gone")
        super().set_string(key, value)

    def remove(self, key):
        if self.broken:
            raise OSError("disk gone")
        super().remove(key)


class TestPersistedNudgeCache:
    """Tests for PersistedNudgeCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def handler(self):
        return NudgeErrorHandler(report_errors=False)

    @pytest.fixture
    def kv(self):
        store = FailingKeyValueStore()
        store.open()
        yield store
        store.close()

    @pytest.fixture
    def cache(self, kv, clock, handler):
        return PersistedNudgeCache(kv, "nudge_cache_", timedelta(minutes=15), clock, handler)

    def test_key_layout(self, cache, kv, clock):
        cache.put(make_nudge(id="n1"))

        assert kv.get_string("nudge_cache_nudge_n1") is not None
        assert kv.get_int("nudge_cache_nudge_n1_timestamp") == int(clock().timestamp() * 1000)

    def test_round_trip_within_ttl(self, cache, clock):
        nudge = make_nudge(id="n1", delivery_count=2, last_delivered_at=clock())
        cache.put(nudge)
        clock.advance(minutes=14)

        assert cache.get("n1").model_dump() == nudge.model_dump()

    def test_expired_entry_is_a_miss(self, cache, clock):
        cache.put(make_nudge(id="n1"))
        clock.advance(minutes=15)

        assert cache.get("n1") is None

    def test_nudge_without_id_is_not_stored(self, cache, kv):
        cache.put(make_nudge())

        assert kv.keys("nudge_cache_") == []

    def test_remove(self, cache):
        cache.put(make_nudge(id="n1"))
        cache.remove("n1")

        assert cache.get("n1") is None

    def test_undecodable_entry_is_a_miss(self, cache, kv):
        cache.put(make_nudge(id="n1"))
        kv.set_string("nudge_cache_nudge_n1", "{not json")

        assert cache.get("n1") is None

    def test_store_failures_are_logged_not_raised(self, cache, kv, handler):
        kv.broken = True

        cache.put(make_nudge(id="n1"))
        assert cache.get("n1") is None
        cache.remove("n1")
        cache.put_unread_count("u1", "2024030609", 3)
        assert cache.get_unread_count("u1", "2024030609") is None

        assert handler.error_counts[NudgeErrorType.CACHE_ERROR] == 5

    def test_unread_counts(self, cache):
        cache.put_unread_count("u1", "2024030609", 3)

        assert cache.get_unread_count("u1", "2024030609") == 3
        assert cache.get_unread_count("u1", "2024030610") is None

    def test_purge_stale_unread_counts(self, cache):
        cache.put_unread_count("u1", "2024030608", 1)
        cache.put_unread_count("u1", "2024030609", 2)

        assert cache.purge_stale_unread_counts("2024030609") == 1
        assert cache.get_unread_count("u1", "2024030608") is None
        assert cache.get_unread_count("u1", "2024030609") == 2

    def test_purge_removes_only_prefixed_keys(self, cache, kv):
        cache.put(make_nudge(id="n1"))
        cache.put_unread_count("u1", "2024030609", 2)
        kv.set_string("unrelated", "kept")

        assert cache.purge() == 3
        assert kv.keys("nudge_cache_") == []
        assert kv.get_string("unrelated") == "kept"

    def test_unread_counts_are_per_user(self, cache):
        cache.put_unread_count("u1", "2024030609", 3)

        assert cache.get_unread_count("u2", "2024030609") is None

    def test_purge_stale_unread_counts_of_every_user(self, cache):
        cache.put_unread_count("u1", "2024030608", 1)
        cache.put_unread_count("u2", "2024030608", 4)
        cache.put_unread_count("u2", "2024030609", 2)

        assert cache.purge_stale_unread_counts("2024030609") == 2
        assert cache.get_unread_count("u2", "2024030609") == 2

    def test_purge_entities_keeps_unread_counts(self, cache):
        cache.put(make_nudge(id="n1"))
        cache.put(make_nudge(id="n2"))
        cache.put_unread_count("u1", "2024030609", 2)

        assert cache.purge_entities() == 2
        assert cache.get("n1") is None
        assert cache.get_unread_count("u1", "2024030609") == 2

    def test_claim_by_same_user_keeps_entries(self, cache):
        assert cache.claim("u1") is True
        cache.put(make_nudge(id="n1"))

        assert cache.claim("u1") is True
        assert cache.get("n1") is not None

    def test_claim_by_another_user_drops_entries(self, cache, kv):
        cache.claim("u1")
        cache.put(make_nudge(id="n1"))

        assert cache.claim("u2") is True

        assert cache.get("n1") is None
        assert kv.get_string(cache.owner_key) == "u2"

    def test_claim_failure_is_reported(self, cache, kv, handler):
        kv.broken = True

        assert cache.claim("u1") is False
        assert handler.error_counts[NudgeErrorType.CACHE_ERROR] == 1
