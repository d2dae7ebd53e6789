"""
In-Memory Document Store

Complete in-process implementation of DocumentStore for local development
and tests. Documents are deep-copied on the way in and out, transactions are
serialized with an asyncio.Lock and their writes are buffered until commit,
and live queries are fed through one asyncio.Queue per subscriber.
"""

import asyncio
import copy
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog

from milo_nudges.services.store.base import (
    SERVER_TIMESTAMP,
    BatchWrite,
    DocumentSnapshot,
    DocumentStore,
    FieldFilter,
    FilterOp,
    Increment,
    Query,
    R,
    StoreError,
    StoreErrorCode,
    Transaction,
    WriteBatch,
)

logger = structlog.get_logger(__name__)


def _matches(data: Dict[str, Any], flt: FieldFilter) -> bool:
    value = data.get(flt.field)
    if flt.op is FilterOp.IS_NULL:
        return value is None
    if flt.op is FilterOp.NOT_NULL:
        return value is not None
    if flt.op is FilterOp.ARRAY_CONTAINS:
        return isinstance(value, (list, tuple, set)) and flt.value in value
    if value is None:
        return False
    try:
        if flt.op is FilterOp.EQUAL:
            return value == flt.value
        if flt.op is FilterOp.LESS_THAN:
            return value < flt.value
        if flt.op is FilterOp.LESS_THAN_OR_EQUAL:
            return value <= flt.value
        if flt.op is FilterOp.GREATER_THAN:
            return value > flt.value
        if flt.op is FilterOp.GREATER_THAN_OR_EQUAL:
            return value >= flt.value
    except TypeError:
        # Mixed types never match, same as the hosted stores
        return False
    raise StoreError(StoreErrorCode.INVALID_ARGUMENT, f"Unsupported filter operator: {flt.op}")


class _MemoryTransaction(Transaction):
    """Reads committed state; writes are applied when the callback returns."""

    def __init__(self, store: "MemoryDocumentStore"):
        self._store = store
        self.writes: List[BatchWrite] = []

    async def get(self, path: str, doc_id: str) -> DocumentSnapshot:
        return self._store._snapshot(path, doc_id)

    def set(self, path: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        self.writes.append(BatchWrite("set", path, doc_id, dict(data), merge))

    def update(self, path: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.writes.append(BatchWrite("update", path, doc_id, dict(data)))

    def delete(self, path: str, doc_id: str) -> None:
        self.writes.append(BatchWrite("delete", path, doc_id))


class MemoryDocumentStore(DocumentStore):
    """
    Dictionary-backed document store.

    Args:
        clock: Source of "server" time for SERVER_TIMESTAMP fields
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._watchers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._transaction_lock = asyncio.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _snapshot(self, path: str, doc_id: str) -> DocumentSnapshot:
        data = self._collections.get(path, {}).get(doc_id)
        return DocumentSnapshot(doc_id, copy.deepcopy(data) if data is not None else None)

    def _resolve(self, data: Dict[str, Any], existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        now = self._clock()
        resolved = dict(existing or {})
        for key, value in data.items():
            if value is SERVER_TIMESTAMP:
                resolved[key] = now
            elif isinstance(value, Increment):
                resolved[key] = (resolved.get(key) or 0) + value.amount
            else:
                resolved[key] = copy.deepcopy(value)
        return resolved

    def _apply_writes(self, writes: List[BatchWrite]) -> None:
        """Apply all writes or none of them."""
        staged = {write.path: dict(self._collections.get(write.path, {})) for write in writes}

        for write in writes:
            docs = staged[write.path]
            if write.kind == "set":
                existing = docs.get(write.doc_id) if write.merge else None
                docs[write.doc_id] = self._resolve(write.data, existing)
            elif write.kind == "update":
                if write.doc_id not in docs:
                    raise StoreError(
                        StoreErrorCode.NOT_FOUND,
                        f"No document to update: {write.path}/{write.doc_id}"
                    )
                docs[write.doc_id] = self._resolve(write.data, docs[write.doc_id])
            elif write.kind == "delete":
                docs.pop(write.doc_id, None)
            else:
                raise StoreError(StoreErrorCode.INVALID_ARGUMENT, f"Unknown write kind: {write.kind}")

        for path, docs in staged.items():
            self._collections[path] = docs
        for path in staged:
            self._notify(path)

    def _notify(self, path: str) -> None:
        for queue in self._watchers.get(path, []):
            queue.put_nowait(None)

    def _evaluate(self, query: Query) -> List[DocumentSnapshot]:
        rows = [
            (doc_id, data)
            for doc_id, data in self._collections.get(query.path, {}).items()
            if all(_matches(data, flt) for flt in query.filters)
        ]

        if query.order_field is not None:
            field_name = query.order_field
            # Documents without the ordered field are not part of an ordered result
            rows = [row for row in rows if row[1].get(field_name) is not None]
            rows.sort(key=lambda row: (row[1][field_name], row[0]), reverse=query.descending)

            if query.cursor is not None and query.cursor.exists:
                cursor_value = query.cursor.data.get(field_name)
                if cursor_value is not None:
                    cursor_key = (cursor_value, query.cursor.id)
                    if query.descending:
                        rows = [row for row in rows if (row[1][field_name], row[0]) < cursor_key]
                    else:
                        rows = [row for row in rows if (row[1][field_name], row[0]) > cursor_key]

        if query.limit_count is not None:
            rows = rows[:query.limit_count]

        return [DocumentSnapshot(doc_id, copy.deepcopy(data)) for doc_id, data in rows]

    # ------------------------------------------------------------------
    # DocumentStore API
    # ------------------------------------------------------------------

    async def get(self, path: str, doc_id: str) -> DocumentSnapshot:
        return self._snapshot(path, doc_id)

    async def add(self, path: str, data: Dict[str, Any]) -> str:
        doc_id = self.new_id()
        self._apply_writes([BatchWrite("set", path, doc_id, dict(data))])
        return doc_id

    async def set(self, path: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        self._apply_writes([BatchWrite("set", path, doc_id, dict(data), merge)])

    async def update(self, path: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._apply_writes([BatchWrite("update", path, doc_id, dict(data))])

    async def delete(self, path: str, doc_id: str) -> None:
        self._apply_writes([BatchWrite("delete", path, doc_id)])

    async def run_query(self, query: Query) -> List[DocumentSnapshot]:
        return self._evaluate(query)

    async def count(self, query: Query) -> int:
        return len(self._evaluate(query))

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[R]]) -> R:
        async with self._transaction_lock:
            transaction = _MemoryTransaction(self)
            result = await fn(transaction)
            self._apply_writes(transaction.writes)
            return result

    async def commit_batch(self, batch: WriteBatch) -> None:
        self._apply_writes(list(batch.writes))

    async def watch(self, query: Query) -> AsyncIterator[List[DocumentSnapshot]]:
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers[query.path].append(queue)
        logger.debug("memory_watch_opened", path=query.path)
        try:
            yield self._evaluate(query)
            while True:
                await queue.get()
                # Collapse bursts of writes into one emission
                while not queue.empty():
                    queue.get_nowait()
                yield self._evaluate(query)
        finally:
            self._watchers[query.path].remove(queue)
            logger.debug("memory_watch_closed", path=query.path)

    def subscriber_count(self, path: str) -> int:
        """Number of open live queries on a collection."""
        return len(self._watchers.get(path, []))
