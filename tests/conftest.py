"""
Shared fixtures for repository tests.

Everything runs on a fake clock and a recording sleep, so no test waits on
real time. Coroutines are driven with asyncio.run.
"""

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from milo_nudges.config import Settings
from milo_nudges.models.nudge import Nudge
from milo_nudges.services.cache.key_value import SqliteKeyValueStore
from milo_nudges.services.error_handler import NudgeErrorHandler
from milo_nudges.services.identity import StaticIdentityProvider
from milo_nudges.services.nudge_repository import NudgeRepository
from milo_nudges.services.store.memory import MemoryDocumentStore

USER_ID = "user-1"
NUDGES_PATH = f"users/{USER_ID}/nudges"

# Wednesday, ISO weekday 3
START = datetime(2024, 3, 6, 9, 30, tzinfo=timezone.utc)


def run(coro):
    return asyncio.run(coro)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Awaitable sleep that records delays and returns immediately."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class CountingStore(MemoryDocumentStore):
    """Memory store that counts calls per method and fails them on demand."""

    def __init__(self, clock=None):
        super().__init__(clock)
        self.calls = Counter()
        self.failures = {}
        self.batch_sizes = []

    def fail(self, method: str, *errors) -> None:
        """
        Raise `errors`, one per call, on the next calls of `method`.

        A None entry lets that call through.
        """
        self.failures.setdefault(method, []).extend(errors)

    def _record(self, method: str) -> None:
        self.calls[method] += 1
        pending = self.failures.get(method)
        if pending:
            error = pending.pop(0)
            if error is not None:
                raise error

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def get(self, path, doc_id):
        self._record("get")
        return await super().get(path, doc_id)

    async def add(self, path, data):
        self._record("add")
        return await super().add(path, data)

    async def set(self, path, doc_id, data, merge=False):
        self._record("set")
        return await super().set(path, doc_id, data, merge)

    async def update(self, path, doc_id, data):
        self._record("update")
        return await super().update(path, doc_id, data)

    async def delete(self, path, doc_id):
        self._record("delete")
        return await super().delete(path, doc_id)

    async def run_query(self, query):
        self._record("run_query")
        return await super().run_query(query)

    async def count(self, query):
        self._record("count")
        return await super().count(query)

    async def run_transaction(self, fn):
        self._record("run_transaction")
        return await super().run_transaction(fn)

    async def commit_batch(self, batch):
        self.batch_sizes.append(len(batch))
        self._record("commit_batch")
        return await super().commit_batch(batch)

    def watch(self, query):
        self._record("watch")
        return super().watch(query)


def make_nudge(content: str = "Drink some water", **overrides) -> Nudge:
    fields = {
        "content": content,
        "scheduled_days": {1, 2, 3, 4, 5},
        "scheduled_minutes": 9 * 60,
    }
    fields.update(overrides)
    return Nudge(**fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store(clock):
    return CountingStore(clock)


@pytest.fixture
def identity():
    return StaticIdentityProvider(USER_ID)


@pytest.fixture
def test_settings():
    return Settings(environment="testing", schedule_timezone="UTC")


@pytest.fixture
def key_value_store(tmp_path):
    return SqliteKeyValueStore(tmp_path / "nudge_cache.sqlite3")


@pytest.fixture
def error_handler():
    return NudgeErrorHandler(report_errors=False)


@pytest.fixture
def repo(store, identity, key_value_store, test_settings, clock, sleep, error_handler):
    """Repository over a counting memory store and a SQLite persisted cache."""
    repository = run(NudgeRepository.create(
        store,
        identity,
        key_value_store,
        settings=test_settings,
        clock=clock,
        sleep=sleep,
        error_handler=error_handler,
    ))
    yield repository
    run(repository.close())
