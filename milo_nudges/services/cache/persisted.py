"""
Persisted Nudge Cache

Secondary cache tier that survives process restarts. Each nudge is stored as
JSON next to a write timestamp (epoch millis) and is only served while it is
younger than the entity TTL. Hour-bucketed unread counts (per user) live
here too, and an owner key records which user the cached nudges belong to.

Key-value store failures never fail a repository call: they are logged as
cache errors and treated as a miss or a skipped write.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from pydantic import ValidationError

from milo_nudges.errors import NudgeErrorType
from milo_nudges.models.nudge import Nudge
from milo_nudges.services.cache.key_value import KeyValueStore
from milo_nudges.services.error_handler import NudgeErrorHandler

logger = structlog.get_logger(__name__)


def _epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class PersistedNudgeCache:
    """
    Nudge entities and unread counts in a KeyValueStore, under one key prefix.

    Args:
        store: Backing key-value store
        prefix: Prefix of every key written (purge() removes all of them)
        ttl: Maximum age of a served entity
        clock: Returns the current time
        error_handler: Receives store failures as cache errors
    """

    def __init__(
        self,
        store: KeyValueStore,
        prefix: str,
        ttl: timedelta,
        clock: Callable[[], datetime],
        error_handler: NudgeErrorHandler
    ):
        self.store = store
        self.prefix = prefix
        self.ttl = ttl
        self._clock = clock
        self._errors = error_handler

    def entity_key(self, nudge_id: str) -> str:
        return f"{self.prefix}nudge_{nudge_id}"

    def unread_count_key(self, user_id: str, bucket: str) -> str:
        return f"{self.prefix}unread_count_{user_id}_{bucket}"

    @property
    def owner_key(self) -> str:
        return f"{self.prefix}owner"

    def open(self) -> None:
        self.store.open()

    def close(self) -> None:
        self.store.close()

    def get(self, nudge_id: str) -> Optional[Nudge]:
        """Return the stored nudge if present and younger than the TTL."""
        key = self.entity_key(nudge_id)
        try:
            payload = self.store.get_string(key)
            if payload is None:
                return None
            written_at = self.store.get_int(f"{key}_timestamp") or 0
        except Exception as e:
            self._errors.log_error(e, "Failed to read persisted nudge", NudgeErrorType.CACHE_ERROR,
                                   {"nudge_id": nudge_id})
            return None

        if _epoch_millis(self._clock()) - written_at >= self.ttl.total_seconds() * 1000:
            return None

        try:
            return Nudge.from_json(payload)
        except ValidationError as e:
            logger.warning("persisted_nudge_decode_failed", nudge_id=nudge_id, error=str(e))
            return None

    def put(self, nudge: Nudge) -> None:
        if not nudge.id:
            return
        key = self.entity_key(nudge.id)
        try:
            self.store.set_string(key, nudge.to_json())
            self.store.set_int(f"{key}_timestamp", _epoch_millis(self._clock()))
        except Exception as e:
            self._errors.log_error(e, "Failed to write persisted nudge", NudgeErrorType.CACHE_ERROR,
                                   {"nudge_id": nudge.id})

    def remove(self, nudge_id: str) -> None:
        key = self.entity_key(nudge_id)
        try:
            self.store.remove(key)
            self.store.remove(f"{key}_timestamp")
        except Exception as e:
            self._errors.log_error(e, "Failed to remove persisted nudge", NudgeErrorType.CACHE_ERROR,
                                   {"nudge_id": nudge_id})

    def get_unread_count(self, user_id: str, bucket: str) -> Optional[int]:
        try:
            return self.store.get_int(self.unread_count_key(user_id, bucket))
        except Exception as e:
            self._errors.log_error(e, "Failed to read cached unread count", NudgeErrorType.CACHE_ERROR)
            return None

    def put_unread_count(self, user_id: str, bucket: str, count: int) -> None:
        try:
            self.store.set_int(self.unread_count_key(user_id, bucket), count)
        except Exception as e:
            self._errors.log_error(e, "Failed to cache unread count", NudgeErrorType.CACHE_ERROR)

    def purge_entities(self) -> int:
        """Remove every cached nudge; failures are logged and count as 0."""
        try:
            keys = self.store.keys(self.entity_key(""))
            for key in keys:
                self.store.remove(key)
        except Exception as e:
            self._errors.log_error(e, "Failed to purge persisted nudges", NudgeErrorType.CACHE_ERROR)
            return 0
        return sum(1 for key in keys if not key.endswith("_timestamp"))

    def claim(self, user_id: str) -> bool:
        """
        Mark the cached nudges as belonging to `user_id`.

        Entries written while another user was signed in are dropped, so a
        new sign-in (or a restart under another account) never reads them.

        Returns:
            False if the store could not be checked or updated
        """
        try:
            owner = self.store.get_string(self.owner_key)
            if owner == user_id:
                return True
            for key in self.store.keys(self.entity_key("")):
                self.store.remove(key)
            self.store.set_string(self.owner_key, user_id)
        except Exception as e:
            self._errors.log_error(e, "Failed to claim persisted cache", NudgeErrorType.CACHE_ERROR,
                                   {"user_id": user_id})
            return False
        if owner is not None:
            logger.info("persisted_cache_owner_changed")
        return True

    def purge(self) -> int:
        """
        Remove every key carrying the prefix.

        Store failures propagate so clear_cache() can report them.
        """
        keys = self.store.keys(self.prefix)
        for key in keys:
            self.store.remove(key)
        return len(keys)

    def purge_stale_unread_counts(self, current_bucket: str) -> int:
        """Remove unread counts of past hour buckets, for every user."""
        try:
            stale = [
                key for key in self.store.keys(f"{self.prefix}unread_count_")
                if not key.endswith(f"_{current_bucket}")
            ]
            for key in stale:
                self.store.remove(key)
        except Exception as e:
            self._errors.log_error(e, "Failed to purge stale unread counts", NudgeErrorType.CACHE_ERROR)
            return 0
        return len(stale)
