"""
Nudge Repository

Caching, rate-limited, retrying data access for nudges in front of a
DocumentStore.

Read path: rate-limit check -> in-memory cache -> persisted cache (single
entities only) -> store call wrapped in the retry policy -> cache populate.
Writes invalidate whatever they could make stale.

Error contract:
- Reads raise DataFetchError, writes raise DataWriteError, transactions
  raise TransactionError. Repository errors raised on the way (rate limit,
  validation, authentication) reach the caller unchanged.
- create_nudge never raises: failures are logged and it returns None.
- Statistics, unread counts and settings degrade to defaults.
- Streams never raise; failures emit an empty list.
"""

import asyncio
from contextlib import aclosing
from datetime import datetime, time, timedelta, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    TypeVar,
)
from zoneinfo import ZoneInfo

import structlog

from milo_nudges.config import Settings, settings as default_settings
from milo_nudges.errors import (
    AuthenticationError,
    NudgeErrorType,
    NudgeValidationError,
)
from milo_nudges.models.batch_operation import (
    AnyBatchOperation,
    CreateOperation,
    DeleteOperation,
    UpdateOperation,
)
from milo_nudges.models.nudge import Nudge, NudgeFeedback
from milo_nudges.models.nudge_settings import NudgeSettings
from milo_nudges.models.nudge_stats import NudgeStats
from milo_nudges.models.pagination import PaginatedResult
from milo_nudges.services.cache.key_value import KeyValueStore
from milo_nudges.services.cache.persisted import PersistedNudgeCache
from milo_nudges.services.cache.ttl_cache import TTLCache
from milo_nudges.services.error_handler import NudgeErrorHandler
from milo_nudges.services.identity import IdentityProvider
from milo_nudges.services.monitoring.error_tracking import set_repository_context
from milo_nudges.services.rate_limiter import RateLimiter
from milo_nudges.services.retry import retry_with_backoff
from milo_nudges.services.store.base import (
    MAX_BATCH_SIZE,
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    Increment,
    Query,
    Transaction,
    WriteBatch,
)

logger = structlog.get_logger(__name__)

R = TypeVar("R")

NUDGES_COLLECTION = "nudges"
TEMPLATES_COLLECTION = "nudgeTemplates"
SETTINGS_COLLECTION = "nudgeSettings"
FEEDBACK_COLLECTION = "nudgeFeedback"

_CREATE_TOKEN = object()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NudgeRepository:
    """
    Repository façade for the signed-in user's nudges.

    Build instances with `await NudgeRepository.create(...)`; the factory
    opens the persisted cache and initializes the store before handing the
    instance out. Direct construction raises TypeError.

    All caches and counters belong to the instance. Callers share one
    instance per process through `milo_nudges.database.get_nudge_repository`.
    """

    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityProvider,
        key_value_store: KeyValueStore,
        settings: Settings,
        clock: Callable[[], datetime],
        sleep: Callable[[float], Awaitable[None]],
        error_handler: NudgeErrorHandler,
        _token: object = None
    ):
        if _token is not _CREATE_TOKEN:
            raise TypeError("NudgeRepository must be built with `await NudgeRepository.create(...)`")

        self.settings = settings
        self._store = store
        self._identity = identity
        self._clock = clock
        self._sleep = sleep
        self._errors = error_handler
        self._timezone = ZoneInfo(settings.schedule_timezone)
        self._closed = False
        self._cache_owner: Optional[str] = None
        self._persisted_claimed = False
        self.logger = logger.bind(service="nudge_repository")

        entity_ttl = timedelta(minutes=settings.entity_cache_ttl_minutes)
        self.nudge_cache: TTLCache[Nudge] = TTLCache(entity_ttl, clock)
        self.list_cache: TTLCache[List[Nudge]] = TTLCache(
            timedelta(minutes=settings.list_cache_ttl_minutes), clock
        )
        self.settings_cache: TTLCache[Any] = TTLCache(
            timedelta(minutes=settings.settings_cache_ttl_minutes), clock
        )
        self.persisted_cache = PersistedNudgeCache(
            key_value_store, settings.cache_key_prefix, entity_ttl, clock, error_handler
        )
        self.rate_limiter = RateLimiter(settings.rate_limit_per_minute, clock)

    @classmethod
    async def create(
        cls,
        store: DocumentStore,
        identity: IdentityProvider,
        key_value_store: KeyValueStore,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        error_handler: Optional[NudgeErrorHandler] = None
    ) -> "NudgeRepository":
        """
        Build a fully initialized repository.

        Args:
            store: Remote document store
            identity: Supplies the signed-in user id
            key_value_store: Backing store of the persisted cache tier
            settings: Defaults to the module-level settings
            clock: Returns the current (timezone-aware) time
            sleep: Awaitable sleep used between retries
            error_handler: Defaults to a handler reporting to Sentry

        Returns:
            Ready-to-use repository
        """
        repository = cls(
            store,
            identity,
            key_value_store,
            settings or default_settings,
            clock or _utc_now,
            sleep,
            error_handler or NudgeErrorHandler(),
            _token=_CREATE_TOKEN,
        )
        await asyncio.to_thread(repository.persisted_cache.open)
        await store.initialize()
        repository.logger.info(
            "nudge_repository_ready",
            store=type(store).__name__,
            persisted_cache=type(key_value_store).__name__,
        )
        return repository

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _begin(self, operation: str, authenticated: bool = True) -> Optional[str]:
        """
        Rate-limit check and Sentry context for one operation.

        Returns the signed-in user id. Unless `authenticated` is False, a
        missing user raises AuthenticationError before any cache is read.
        """
        self.rate_limiter.check(operation)
        user_id = self._identity.current_user_id()
        set_repository_context(operation, user_id)
        if not authenticated:
            return user_id
        if not user_id:
            raise AuthenticationError("User not authenticated")
        self._claim_caches(user_id)
        return user_id

    def _claim_caches(self, user_id: str) -> None:
        # Entity caches are keyed by nudge id alone and hold one user's nudges
        if user_id != self._cache_owner:
            if self._cache_owner is not None:
                self.logger.info("cache_owner_changed")
            self.nudge_cache.clear()
            self._cache_owner = user_id
            self._persisted_claimed = False
        if not self._persisted_claimed:
            self._persisted_claimed = self.persisted_cache.claim(user_id)

    @staticmethod
    def _nudges_path(user_id: str) -> str:
        return f"users/{user_id}/{NUDGES_COLLECTION}"

    async def _retry(self, operation: Callable[[], Awaitable[R]], name: str) -> R:
        return await retry_with_backoff(
            operation,
            max_retries=self.settings.retry_max_attempts,
            initial_delay=self.settings.retry_initial_delay_ms / 1000,
            sleep=self._sleep,
            operation_name=name,
        )

    def _local_now(self) -> datetime:
        return self._clock().astimezone(self._timezone)

    def _hour_bucket(self) -> str:
        return self._local_now().strftime("%Y%m%d%H")

    @staticmethod
    def _order_field(order_by: str) -> str:
        try:
            return Nudge.document_field(order_by)
        except ValueError as e:
            raise NudgeValidationError(str(e)) from e

    @staticmethod
    def _check_limit(limit: int) -> None:
        if limit <= 0:
            raise NudgeValidationError(f"limit must be positive, got {limit}")

    @staticmethod
    def _decode(snapshots: List[DocumentSnapshot]) -> List[Nudge]:
        return [Nudge.from_document(snapshot.id, snapshot.data) for snapshot in snapshots]

    @staticmethod
    def _page(nudges: List[Nudge], limit: int) -> PaginatedResult[Nudge]:
        return PaginatedResult(
            items=list(nudges),
            has_more=len(nudges) >= limit,
            last_document_id=nudges[-1].id if nudges else None,
        )

    def _cache_nudges(self, nudges: List[Nudge]) -> None:
        for nudge in nudges:
            if nudge.id:
                self.nudge_cache.put(nudge.id, nudge)

    def _evict_nudge(self, nudge_id: str) -> None:
        self.nudge_cache.invalidate(nudge_id)
        self.persisted_cache.remove(nudge_id)

    def _invalidate_list_cache(self) -> None:
        self.list_cache.clear()

    def _invalidate_all_caches(self) -> None:
        self.nudge_cache.clear()
        self.list_cache.clear()
        self.settings_cache.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_nudges(
        self,
        limit: int = 50,
        start_after: Optional[str] = None,
        order_by: str = "created_at",
        descending: bool = True
    ) -> PaginatedResult[Nudge]:
        """
        Fetch one page of the user's nudges.

        A page served from the list cache reports `has_more` as
        "the page is full", which can be wrong when the collection ends
        exactly at the page boundary.

        Args:
            limit: Page size
            start_after: `last_document_id` of the previous page
            order_by: Nudge field to order by
            descending: Sort direction

        Raises:
            DataFetchError: If the page could not be fetched
        """
        try:
            user_id = self._begin("getNudges")
            self._check_limit(limit)
            self.logger.info("fetching_nudges", limit=limit, start_after=start_after, order_by=order_by)

            cache_key = f"getNudges_{user_id}_{limit}_{start_after or 'null'}_{order_by}_{descending}"
            cached = self.list_cache.get(cache_key)
            if cached is not None:
                self.logger.info("nudges_cache_hit", count=len(cached))
                return self._page(cached, limit)

            path = self._nudges_path(user_id)
            query = Query(path).order_by(self._order_field(order_by), descending=descending).limit(limit)

            if start_after:
                cursor = await self._retry(lambda: self._store.get(path, start_after), "getNudges.cursor")
                if cursor.exists:
                    query = query.start_after(cursor)

            snapshots = await self._retry(lambda: self._store.run_query(query), "getNudges")
            nudges = self._decode(snapshots)
            self.logger.info("nudges_fetched", count=len(nudges))

            self.list_cache.put(cache_key, nudges)
            self._cache_nudges(nudges)

            return self._page(nudges, limit)
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, "Failed to fetch nudges", NudgeErrorType.DATA_FETCH_ERROR
            )

    async def get_nudge_by_id(self, nudge_id: str) -> Optional[Nudge]:
        """
        Fetch one nudge: memory cache, then persisted cache, then the store.

        Returns:
            The nudge, or None when no such document exists

        Raises:
            DataFetchError: If the store could not be read
        """
        try:
            user_id = self._begin("getNudgeById")

            cached = self.nudge_cache.get(nudge_id)
            if cached is not None:
                self.logger.info("nudge_cache_hit", nudge_id=nudge_id, tier="memory")
                return cached

            persisted = self.persisted_cache.get(nudge_id)
            if persisted is not None:
                self.logger.info("nudge_cache_hit", nudge_id=nudge_id, tier="persisted")
                self.nudge_cache.put(nudge_id, persisted)
                return persisted

            path = self._nudges_path(user_id)
            snapshot = await self._retry(lambda: self._store.get(path, nudge_id), "getNudgeById")
            if not snapshot.exists:
                self.logger.warning("nudge_not_found", nudge_id=nudge_id)
                return None

            nudge = Nudge.from_document(snapshot.id, snapshot.data)
            self.nudge_cache.put(nudge_id, nudge)
            self.persisted_cache.put(nudge)
            return nudge
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, f"Failed to fetch nudge with ID: {nudge_id}", NudgeErrorType.DATA_FETCH_ERROR,
                {"nudge_id": nudge_id}
            )

    async def get_active_nudges(self, limit: int = 10) -> List[Nudge]:
        """
        Nudges due now: active, scheduled for today's weekday and already
        past their minute of day, latest first.

        Raises:
            DataFetchError: If the query failed
        """
        try:
            user_id = self._begin("getActiveNudges")
            self._check_limit(limit)

            now = self._local_now()
            minute_of_day = now.hour * 60 + now.minute
            cache_key = f"getActiveNudges_{user_id}_{now.date().isoformat()}_{now.hour}_{limit}"

            cached = self.list_cache.get(cache_key)
            if cached is not None:
                self.logger.info("active_nudges_cache_hit", count=len(cached))
                return list(cached)

            query = (
                Query(self._nudges_path(user_id))
                .where("isActive", "==", True)
                .where("scheduledDays", "array-contains", now.isoweekday())
                .where("scheduledMinutes", "<=", minute_of_day)
                .order_by("scheduledMinutes", descending=True)
                .limit(limit)
            )
            snapshots = await self._retry(lambda: self._store.run_query(query), "getActiveNudges")
            nudges = self._decode(snapshots)
            self.logger.info("active_nudges_fetched", count=len(nudges), minute_of_day=minute_of_day)

            self.list_cache.put(
                cache_key, nudges, ttl=timedelta(minutes=self.settings.active_nudges_cache_ttl_minutes)
            )
            self._cache_nudges(nudges)
            return list(nudges)
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, "Failed to fetch active nudges", NudgeErrorType.DATA_FETCH_ERROR
            )

    async def get_nudge_templates(self) -> List[Nudge]:
        """
        System-wide nudge templates, cached for a day.

        Raises:
            DataFetchError: If the templates could not be fetched
        """
        try:
            self._begin("getNudgeTemplates", authenticated=False)

            cache_key = "nudgeTemplates"
            cached = self.list_cache.get(cache_key)
            if cached is not None:
                return list(cached)

            query = Query(TEMPLATES_COLLECTION)
            snapshots = await self._retry(lambda: self._store.run_query(query), "getNudgeTemplates")
            templates = self._decode(snapshots)
            self.logger.info("nudge_templates_fetched", count=len(templates))

            self.list_cache.put(cache_key, templates, ttl=timedelta(hours=self.settings.template_cache_ttl_hours))
            return list(templates)
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, "Failed to fetch nudge templates", NudgeErrorType.DATA_FETCH_ERROR
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_nudge(self, nudge: Nudge) -> Optional[str]:
        """
        Persist a new nudge and return its store-assigned id.

        Unlike the other writes this never raises: validation, rate limit,
        authentication and store failures are logged through the error
        handler and None is returned. Callers must check for None.

        Returns:
            The new id, or None if the nudge was not created
        """
        try:
            user_id = self._begin("createNudge")

            if not nudge.content or not nudge.content.strip():
                raise NudgeValidationError("Nudge content cannot be empty")

            self.logger.info("creating_nudge")
            data = nudge.to_document()
            data.setdefault("createdAt", SERVER_TIMESTAMP)
            data.setdefault("userId", user_id)

            path = self._nudges_path(user_id)
            nudge_id = await self._retry(lambda: self._store.add(path, data), "createNudge")
            self.logger.info("nudge_created", nudge_id=nudge_id)

            self._invalidate_list_cache()
            await self._cache_created(path, nudge_id)

            return nudge_id
        except Exception as e:
            self._errors.handle_repository_exception(
                e, "Failed to create nudge", NudgeErrorType.DATA_WRITE_ERROR
            )
            return None

    async def _cache_created(self, path: str, nudge_id: str) -> None:
        """Read a new nudge back once so the cached copy carries the store's timestamps."""
        try:
            snapshot = await self._retry(lambda: self._store.get(path, nudge_id), "createNudge.readBack")
            if not snapshot.exists:
                return
            created = Nudge.from_document(snapshot.id, snapshot.data)
        except Exception as e:
            self._errors.log_error(e, "Failed to cache created nudge", NudgeErrorType.CACHE_ERROR,
                                   {"nudge_id": nudge_id})
            return
        self.nudge_cache.put(nudge_id, created)
        self.persisted_cache.put(created)

    async def update_nudge(self, nudge: Nudge) -> bool:
        """
        Overwrite the stored fields of an existing nudge.

        Raises:
            NudgeValidationError: If the nudge has no id
            DataWriteError: If the write failed
        """
        try:
            user_id = self._begin("updateNudge")

            if not nudge.id:
                raise NudgeValidationError("Nudge ID cannot be empty for update operation")

            self.logger.info("updating_nudge", nudge_id=nudge.id)
            data = nudge.to_document()
            data["updatedAt"] = SERVER_TIMESTAMP

            path = self._nudges_path(user_id)
            await self._retry(lambda: self._store.update(path, nudge.id, data), "updateNudge")

            self.nudge_cache.put(nudge.id, nudge)
            self.persisted_cache.put(nudge)
            self._invalidate_list_cache()

            return True
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, f"Failed to update nudge with ID: {nudge.id}", NudgeErrorType.DATA_WRITE_ERROR,
                {"nudge_id": nudge.id}
            )

    async def delete_nudge(self, nudge_id: str) -> bool:
        """
        Delete a nudge and drop it from every cache tier.

        The store delete and the cache removal are separate steps; a failed
        persisted-cache removal is logged and the delete still succeeds.

        Raises:
            DataWriteError: If the store delete failed
        """
        try:
            user_id = self._begin("deleteNudge")
            self.logger.info("deleting_nudge", nudge_id=nudge_id)

            path = self._nudges_path(user_id)
            await self._retry(lambda: self._store.delete(path, nudge_id), "deleteNudge")

            self._evict_nudge(nudge_id)
            self._invalidate_list_cache()

            return True
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, f"Failed to delete nudge with ID: {nudge_id}", NudgeErrorType.DATA_WRITE_ERROR,
                {"nudge_id": nudge_id}
            )

    async def _record_engagement(
        self,
        operation: str,
        nudge_id: str,
        moment: datetime,
        timestamp_attr: str,
        counter_attr: str
    ) -> bool:
        """Stamp a timestamp and atomically bump its counter."""
        user_id = self._begin(operation)
        self.logger.info("recording_engagement", operation=operation, nudge_id=nudge_id)

        path = self._nudges_path(user_id)
        update = {
            Nudge.document_field(timestamp_attr): moment,
            Nudge.document_field(counter_attr): Increment(1),
        }
        await self._retry(lambda: self._store.update(path, nudge_id, update), operation)

        cached = self.nudge_cache.get(nudge_id)
        if cached is not None:
            patched = cached.model_copy(update={
                timestamp_attr: moment,
                counter_attr: getattr(cached, counter_attr) + 1,
            })
            self.nudge_cache.put(nudge_id, patched)
            self.persisted_cache.put(patched)
        else:
            self._evict_nudge(nudge_id)

        return True

    async def mark_nudge_as_delivered(self, nudge_id: str, delivered_at: datetime) -> bool:
        """
        Record a delivery.

        Raises:
            DataWriteError: If the update failed
        """
        try:
            return await self._record_engagement(
                "markNudgeAsDelivered", nudge_id, delivered_at, "last_delivered_at", "delivery_count"
            )
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, f"Failed to mark nudge as delivered with ID: {nudge_id}", NudgeErrorType.DATA_WRITE_ERROR,
                {"nudge_id": nudge_id}
            )

    async def mark_nudge_as_acted_upon(self, nudge_id: str, acted_at: datetime) -> bool:
        """
        Record that the user acted on a nudge.

        Raises:
            DataWriteError: If the update failed
        """
        try:
            return await self._record_engagement(
                "markNudgeAsActedUpon", nudge_id, acted_at, "last_acted_at", "action_count"
            )
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, f"Failed to mark nudge as acted upon with ID: {nudge_id}", NudgeErrorType.DATA_WRITE_ERROR,
                {"nudge_id": nudge_id}
            )

    async def record_nudge_feedback(self, nudge_id: str, rating: int, comment: Optional[str] = None) -> bool:
        """
        Store a rating and fold it into the nudge's running average.

        The feedback insert and the average/count recomputation happen in one
        store transaction, so concurrent ratings are never lost.

        Raises:
            DataWriteError: If the transaction failed
        """
        try:
            user_id = self._begin("recordNudgeFeedback")
            self.logger.info("recording_feedback", nudge_id=nudge_id, rating=rating)

            path = self._nudges_path(user_id)
            feedback = NudgeFeedback(nudge_id=nudge_id, user_id=user_id, rating=rating, comment=comment)

            async def apply_feedback(transaction: Transaction) -> None:
                snapshot = await transaction.get(path, nudge_id)

                feedback_data = feedback.to_document()
                feedback_data["createdAt"] = SERVER_TIMESTAMP
                transaction.set(FEEDBACK_COLLECTION, self._store.new_id(), feedback_data)

                if snapshot.exists:
                    current_average = float(snapshot.data.get("averageRating") or 0.0)
                    current_count = int(snapshot.data.get("ratingCount") or 0)
                    new_count = current_count + 1
                    new_average = (current_average * current_count + rating) / new_count
                    transaction.update(path, nudge_id, {
                        "averageRating": new_average,
                        "ratingCount": new_count,
                        "lastFeedbackAt": SERVER_TIMESTAMP,
                    })

            await self._retry(lambda: self._store.run_transaction(apply_feedback), "recordNudgeFeedback")

            # The new average only exists inside the transaction
            self._evict_nudge(nudge_id)
            return True
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, f"Failed to record feedback for nudge with ID: {nudge_id}", NudgeErrorType.DATA_WRITE_ERROR,
                {"nudge_id": nudge_id}
            )

    def _build_batch(self, path: str, user_id: str, chunk: Sequence[AnyBatchOperation]) -> WriteBatch:
        batch = self._store.batch()
        for operation in chunk:
            if isinstance(operation, CreateOperation):
                data = operation.data.to_document()
                data.setdefault("createdAt", SERVER_TIMESTAMP)
                data.setdefault("userId", user_id)
                batch.set(path, self._store.new_id(), data)
            elif isinstance(operation, UpdateOperation):
                data = operation.data.to_document()
                data["updatedAt"] = SERVER_TIMESTAMP
                batch.update(path, operation.id, data)
            elif isinstance(operation, DeleteOperation):
                batch.delete(path, operation.id)
            else:
                raise NudgeValidationError(f"Unsupported batch operation: {operation!r}")
        return batch

    async def perform_batch_operations(self, operations: Sequence[AnyBatchOperation]) -> bool:
        """
        Apply creates, updates and deletes in atomic chunks.

        Chunks hold at most `batch_chunk_size` operations and commit one
        after another. When a chunk fails, the chunks before it stay
        committed and the ones after it are not attempted.

        Raises:
            DataWriteError: If a chunk failed to commit
        """
        committed_chunks = 0
        try:
            user_id = self._begin("performBatchOperations")

            path = self._nudges_path(user_id)
            chunk_size = min(self.settings.batch_chunk_size, MAX_BATCH_SIZE)
            chunks = [operations[i:i + chunk_size] for i in range(0, len(operations), chunk_size)]
            self.logger.info("performing_batch_operations", operations=len(operations), chunks=len(chunks))

            for chunk in chunks:
                batch = self._build_batch(path, user_id, chunk)
                await self._retry(lambda: self._store.commit_batch(batch), "performBatchOperations")
                committed_chunks += 1
                for operation in chunk:
                    if isinstance(operation, (UpdateOperation, DeleteOperation)):
                        self.persisted_cache.remove(operation.id)

            self.logger.info("batch_operations_completed", chunks=committed_chunks)
            return True
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, "Failed to perform batch operations", NudgeErrorType.DATA_WRITE_ERROR,
                {"committed_chunks": committed_chunks}
            )
        finally:
            if committed_chunks:
                self._invalidate_all_caches()

    async def execute_transaction(self, fn: Callable[[Transaction], Awaitable[R]]) -> R:
        """
        Run `fn` inside a store transaction.

        The transaction's effects are opaque to the repository, so every
        in-memory cache and every persisted nudge is dropped afterwards,
        whether it committed or not.

        Raises:
            TransactionError: If the transaction failed
        """
        try:
            self._begin("executeTransaction", authenticated=False)
            self.logger.info("executing_transaction")
            result = await self._retry(lambda: self._store.run_transaction(fn), "executeTransaction")
            self.logger.info("transaction_completed")
            return result
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, "Failed to execute transaction", NudgeErrorType.TRANSACTION_ERROR
            )
        finally:
            self._invalidate_all_caches()
            self.persisted_cache.purge_entities()

    async def save_nudge_settings(self, nudge_settings: NudgeSettings) -> bool:
        """
        Merge the user's notification settings into the store.

        Raises:
            DataWriteError: If the write failed
        """
        try:
            user_id = self._begin("saveNudgeSettings")

            data = nudge_settings.to_document()
            data["updatedAt"] = SERVER_TIMESTAMP
            await self._retry(
                lambda: self._store.set(SETTINGS_COLLECTION, user_id, data, merge=True),
                "saveNudgeSettings"
            )

            self.settings_cache.put(
                f"nudgeSettings_{user_id}",
                nudge_settings.model_copy(update={"updated_at": self._clock(), "error": None}),
            )
            return True
        except Exception as e:
            raise self._errors.handle_repository_exception(
                e, "Failed to save nudge settings", NudgeErrorType.DATA_WRITE_ERROR
            )

    # ------------------------------------------------------------------
    # Degrading reads
    # ------------------------------------------------------------------

    async def get_nudge_stats(self) -> NudgeStats:
        """
        Engagement statistics over the most recent nudges.

        Scans at most `stats_scan_limit` documents, so totals are approximate
        for larger collections. Cached until the next local midnight or the
        settings TTL, whichever comes first. Never raises: failures return
        zero-valued statistics with `error` set.
        """
        try:
            user_id = self._begin("getNudgeStats")

            now = self._local_now()
            cache_key = f"nudgeStats_{user_id}_{now.date().isoformat()}"
            cached = self.settings_cache.get(cache_key)
            if cached is not None:
                return cached

            query = (
                Query(self._nudges_path(user_id))
                .order_by("createdAt", descending=True)
                .limit(self.settings.stats_scan_limit)
            )
            snapshots = await self._retry(lambda: self._store.run_query(query), "getNudgeStats")
            nudges = self._decode(snapshots)

            delivered = sum(1 for nudge in nudges if nudge.delivery_count > 0)
            acted_upon = sum(1 for nudge in nudges if nudge.action_count > 0)
            rated = [nudge for nudge in nudges if nudge.rating_count > 0]
            total_ratings = sum(nudge.rating_count for nudge in rated)
            weighted = sum(nudge.average_rating * nudge.rating_count for nudge in rated)

            stats = NudgeStats(
                total_nudges=len(nudges),
                active_nudges=sum(1 for nudge in nudges if nudge.is_active),
                delivered_nudges=delivered,
                acted_upon_nudges=acted_upon,
                average_rating=weighted / total_ratings if total_ratings else 0.0,
                total_ratings=total_ratings,
                engagement_rate=(acted_upon / delivered) * 100 if delivered else 0.0,
                last_updated=self._clock(),
            )
            self.logger.info("nudge_stats_computed", total=stats.total_nudges)

            midnight = datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)
            expires_at = min(
                self._clock() + timedelta(minutes=self.settings.settings_cache_ttl_minutes),
                midnight,
            )
            self.settings_cache.put_until(cache_key, stats, expires_at)
            return stats
        except Exception as e:
            self._errors.log_error(e, "Failed to fetch nudge statistics", NudgeErrorType.DATA_FETCH_ERROR)
            return NudgeStats.empty(str(e), self._clock())

    async def get_unread_nudge_count(self) -> int:
        """
        Nudges delivered at least once and never acted upon.

        Cached per hour in the persisted tier only. Never raises: failures
        return 0.
        """
        try:
            user_id = self._begin("getUnreadNudgeCount")

            bucket = self._hour_bucket()
            cached = self.persisted_cache.get_unread_count(user_id, bucket)
            if cached is not None:
                self.logger.info("unread_count_cache_hit", count=cached)
                return cached

            query = (
                Query(self._nudges_path(user_id))
                .where("lastDeliveredAt", "not-null")
                .where("lastActedAt", "is-null")
            )
            count = await self._retry(lambda: self._store.count(query), "getUnreadNudgeCount")
            self.logger.info("unread_count_fetched", count=count)

            self.persisted_cache.put_unread_count(user_id, bucket, count)
            return count
        except Exception as e:
            self._errors.log_error(e, "Failed to get unread nudge count", NudgeErrorType.DATA_FETCH_ERROR)
            return 0

    async def get_nudge_settings(self) -> NudgeSettings:
        """
        The user's notification settings; defaults when none are stored.

        Never raises: failures return defaults with `error` set.
        """
        try:
            user_id = self._begin("getNudgeSettings")

            cache_key = f"nudgeSettings_{user_id}"
            cached = self.settings_cache.get(cache_key)
            if cached is not None:
                return cached

            snapshot = await self._retry(
                lambda: self._store.get(SETTINGS_COLLECTION, user_id), "getNudgeSettings"
            )
            nudge_settings = NudgeSettings.from_document(snapshot.data) if snapshot.exists else NudgeSettings()

            self.settings_cache.put(cache_key, nudge_settings)
            return nudge_settings
        except Exception as e:
            self._errors.log_error(e, "Failed to fetch nudge settings", NudgeErrorType.DATA_FETCH_ERROR)
            return NudgeSettings(error=str(e))

    # ------------------------------------------------------------------
    # Live query
    # ------------------------------------------------------------------

    async def nudges_stream(
        self,
        limit: int = 50,
        order_by: str = "created_at",
        descending: bool = True
    ) -> AsyncIterator[List[Nudge]]:
        """
        Live list of the user's nudges.

        Yields the current list and a new one after every change. Errors
        never end the stream: they are logged and an empty list is emitted;
        after an upstream failure the subscription is reopened with backoff.
        Close the generator (e.g. `async with contextlib.aclosing(...)`) to
        release the subscription.
        """
        try:
            user_id = self._begin("nudgesStream")
            self._check_limit(limit)
            query = Query(self._nudges_path(user_id)).order_by(self._order_field(order_by), descending=descending).limit(limit)
        except Exception as e:
            self._errors.handle_repository_exception(
                e, "Failed to create nudges stream", NudgeErrorType.STREAM_ERROR
            )
            yield []
            return

        self.logger.info("nudges_stream_opened", limit=limit, order_by=order_by)
        initial_delay = self.settings.retry_initial_delay_ms / 1000
        delay = initial_delay

        while not self._closed:
            try:
                async with aclosing(self._store.watch(query)) as updates:
                    async for snapshots in updates:
                        try:
                            nudges = self._decode(snapshots)
                            self._cache_nudges(nudges)
                        except Exception as e:
                            self._errors.log_error(
                                e, "Error processing nudges stream update", NudgeErrorType.STREAM_ERROR
                            )
                            nudges = []
                        delay = initial_delay
                        yield nudges
                return
            except Exception as e:
                self._errors.log_error(e, "Error in nudges stream", NudgeErrorType.STREAM_ERROR)

            yield []
            await self._sleep(delay)
            delay = min(delay * 2, self.settings.stream_max_backoff_seconds)

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def sweep_expired(self) -> Dict[str, int]:
        """Drop expired cache entries, stale rate-limit windows and old unread counts."""
        removed = {
            "nudges": self.nudge_cache.purge_expired(),
            "lists": self.list_cache.purge_expired(),
            "settings": self.settings_cache.purge_expired(),
            "rate_limit_windows": self.rate_limiter.purge_stale(),
            "unread_counts": self.persisted_cache.purge_stale_unread_counts(self._hour_bucket()),
        }
        self.logger.debug("cache_sweep_completed", **removed)
        return removed

    async def clear_cache(self) -> bool:
        """
        Drop every in-memory cache and the persisted keys under the prefix.

        Returns:
            False if the persisted store could not be purged
        """
        try:
            self.logger.info("clearing_caches")
            self._invalidate_all_caches()
            self._persisted_claimed = False
            removed = self.persisted_cache.purge()
            self.logger.info("caches_cleared", persisted_keys=removed)
            return True
        except Exception as e:
            self._errors.log_error(e, "Failed to clear cache", NudgeErrorType.CACHE_ERROR)
            return False

    async def close(self) -> None:
        """Drop in-memory caches and release the persisted cache and store."""
        self._closed = True
        try:
            self._invalidate_all_caches()
            self.persisted_cache.close()
            await self._store.close()
            self.logger.info("nudge_repository_closed")
        except Exception as e:
            self._errors.log_error(e, "Error closing repository", NudgeErrorType.RESOURCE_ERROR)

    @property
    def closed(self) -> bool:
        return self._closed


__all__ = [
    "NudgeRepository",
    "NUDGES_COLLECTION",
    "TEMPLATES_COLLECTION",
    "SETTINGS_COLLECTION",
    "FEEDBACK_COLLECTION",
]
