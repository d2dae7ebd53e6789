"""
Tests for the shared repository wiring and the lifecycle hooks.
"""

import asyncio

import pytest

from milo_nudges import lifecycle
from milo_nudges.config import settings
from milo_nudges.database import (
    create_document_store,
    create_key_value_store,
    get_nudge_repository,
    reset_nudge_repository,
)
from milo_nudges.services.cache.key_value import RedisKeyValueStore, SqliteKeyValueStore
from milo_nudges.services.identity import StaticIdentityProvider
from milo_nudges.services.store.memory import MemoryDocumentStore

from conftest import USER_ID, make_nudge, run


@pytest.fixture
def local_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "environment", "testing")
    monkeypatch.setattr(settings, "mongodb_url", None)
    monkeypatch.setattr(settings, "redis_url", None)
    monkeypatch.setattr(settings, "persisted_cache_path", str(tmp_path / "kv.sqlite3"))
    monkeypatch.setattr(settings, "default_user_id", USER_ID)
    monkeypatch.setattr(settings, "schedule_timezone", "UTC")
    yield settings
    run(reset_nudge_repository())


class TestBackendSelection:

    def test_memory_store_without_mongodb_url(self, local_settings):
        assert isinstance(create_document_store(), MemoryDocumentStore)

    def test_sqlite_cache_without_redis_url(self, local_settings):
        kv = create_key_value_store()

        assert isinstance(kv, SqliteKeyValueStore)
        assert kv.db_path == local_settings.persisted_cache_path

    def test_redis_cache_when_configured(self, local_settings, monkeypatch):
        monkeypatch.setattr(local_settings, "redis_url", "redis://localhost:6379/0")

        assert isinstance(create_key_value_store(), RedisKeyValueStore)


class TestSharedRepository:
    """Tests for get_nudge_repository and reset_nudge_repository."""

    def test_returns_same_instance(self, local_settings):
        async def scenario():
            first = await get_nudge_repository()
            second = await get_nudge_repository()
            return first, second

        first, second = run(scenario())

        assert first is second

    def test_concurrent_first_callers_share_instance(self, local_settings):
        async def scenario():
            return await asyncio.gather(*(get_nudge_repository() for _ in range(3)))

        repositories = run(scenario())

        assert all(r is repositories[0] for r in repositories)
        assert repositories[0].closed is False

    def test_uses_default_user(self, local_settings):
        async def scenario():
            repository = await get_nudge_repository()
            return await repository.create_nudge(make_nudge())

        assert run(scenario()) is not None

    def test_explicit_identity(self, local_settings):
        async def scenario():
            repository = await get_nudge_repository(StaticIdentityProvider("someone-else"))
            await repository.create_nudge(make_nudge())
            return await repository.get_nudges()

        assert [n.user_id for n in run(scenario()).items] == ["someone-else"]

    def test_reset_closes_and_rebuilds(self, local_settings):
        first = run(get_nudge_repository())

        run(reset_nudge_repository())
        second = run(get_nudge_repository())

        assert first.closed is True
        assert second is not first

    def test_reset_without_instance(self, local_settings):
        run(reset_nudge_repository())


class TestLifecycle:

    def test_startup_and_shutdown(self, local_settings, monkeypatch):
        calls = []
        monkeypatch.setattr(lifecycle, "setup_logging", lambda level: calls.append(("logging", level)))
        monkeypatch.setattr(lifecycle, "init_sentry", lambda: calls.append(("sentry",)) or False)

        async def scenario():
            repository = await lifecycle.startup_event()
            scheduler = lifecycle.scheduler
            await lifecycle.shutdown_event()
            return repository, scheduler

        repository, scheduler = run(scenario())

        assert calls == [("logging", local_settings.log_level), ("sentry",)]
        assert scheduler.running is False
        assert lifecycle.scheduler is None
        assert repository.closed is True
