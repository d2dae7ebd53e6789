"""
Repository Wiring

Builds the process-wide NudgeRepository from settings: MongoDB when
MILO_MONGODB_URL is set (in-memory store otherwise), Redis for the persisted
cache when MILO_REDIS_URL is set (local SQLite file otherwise).
"""

import logging
from typing import Optional

from milo_nudges.config import settings
from milo_nudges.services.cache.key_value import KeyValueStore, RedisKeyValueStore, SqliteKeyValueStore
from milo_nudges.services.identity import IdentityProvider, StaticIdentityProvider
from milo_nudges.services.nudge_repository import NudgeRepository
from milo_nudges.services.store.base import DocumentStore
from milo_nudges.services.store.memory import MemoryDocumentStore

logger = logging.getLogger(__name__)

_repository: Optional[NudgeRepository] = None


def create_document_store() -> DocumentStore:
    """Document store selected by configuration."""
    if not settings.mongodb_url:
        logger.warning("MONGODB_URL not configured - using in-memory document store")
        return MemoryDocumentStore()

    from milo_nudges.services.store.mongodb import MongoDocumentStore

    logger.info(f"Using MongoDB document store (database: {settings.mongodb_database})")
    return MongoDocumentStore(settings.mongodb_url, settings.mongodb_database)


def create_key_value_store() -> KeyValueStore:
    """Persisted cache backend selected by configuration."""
    if settings.redis_url:
        logger.info("Using Redis persisted cache")
        return RedisKeyValueStore(settings.redis_url)

    logger.info(f"Using SQLite persisted cache at {settings.persisted_cache_path}")
    return SqliteKeyValueStore(settings.persisted_cache_path)


async def get_nudge_repository(identity: Optional[IdentityProvider] = None) -> NudgeRepository:
    """
    Shared repository instance, built on first use.

    Concurrent first callers all receive the same instance: a caller that
    finishes building after another one already published its instance
    closes its own and returns the published one.

    Args:
        identity: Identity provider for the first build; ignored afterwards
    """
    global _repository

    if _repository is not None:
        return _repository

    repository = await NudgeRepository.create(
        create_document_store(),
        identity or StaticIdentityProvider(settings.default_user_id),
        create_key_value_store(),
        settings=settings,
    )

    if _repository is None:
        _repository = repository
        logger.info("Nudge repository initialized")
    else:
        await repository.close()

    return _repository


async def reset_nudge_repository() -> None:
    """Close and forget the shared instance (tests, sign-out flows)."""
    global _repository

    repository, _repository = _repository, None
    if repository is not None:
        await repository.close()
