"""
MongoDB Document Store

DocumentStore over pymongo's asyncio client. A collection path such as
"users/u1/nudges" maps to the collection "users__u1__nudges" and the
document id is kept in `_id`. Transactions and batches run in client
sessions (a replica set is required); live queries use change streams and
re-run the query on every change.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import (
    ConnectionFailure,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    WTimeoutError,
)

from milo_nudges.services.store.base import (
    SERVER_TIMESTAMP,
    BatchWrite,
    DocumentSnapshot,
    DocumentStore,
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

_RANGE_OPERATORS = {
    FilterOp.LESS_THAN: "$lt",
    FilterOp.LESS_THAN_OR_EQUAL: "$lte",
    FilterOp.GREATER_THAN: "$gt",
    FilterOp.GREATER_THAN_OR_EQUAL: "$gte",
}


@contextmanager
def translate_errors(operation: str):
    """Re-raise pymongo failures as StoreError with a store error code."""
    try:
        yield
    except StoreError:
        raise
    except (NetworkTimeout, ExecutionTimeout, WTimeoutError) as e:
        raise StoreError(StoreErrorCode.DEADLINE_EXCEEDED, f"{operation}: {e}") from e
    except ConnectionFailure as e:
        raise StoreError(StoreErrorCode.UNAVAILABLE, f"{operation}: {e}") from e
    except PyMongoError as e:
        raise StoreError(StoreErrorCode.UNKNOWN, f"{operation}: {e}") from e


def collection_name(path: str) -> str:
    return path.strip("/").replace("/", "__")


def to_mongo_filter(query: Query) -> Dict[str, Any]:
    """Translate a Query into a MongoDB filter document."""
    clauses: List[Dict[str, Any]] = []

    for flt in query.filters:
        if flt.op in (FilterOp.EQUAL, FilterOp.ARRAY_CONTAINS):
            # Equality on an array field matches any element
            clauses.append({flt.field: flt.value})
        elif flt.op is FilterOp.IS_NULL:
            clauses.append({flt.field: None})
        elif flt.op is FilterOp.NOT_NULL:
            clauses.append({flt.field: {"$ne": None}})
        else:
            clauses.append({flt.field: {_RANGE_OPERATORS[flt.op]: flt.value}})

    if query.order_field is not None:
        clauses.append({query.order_field: {"$ne": None}})

        if query.cursor is not None and query.cursor.exists:
            value = query.cursor.data.get(query.order_field)
            if value is not None:
                cmp = "$lt" if query.descending else "$gt"
                clauses.append({
                    "$or": [
                        {query.order_field: {cmp: value}},
                        {query.order_field: value, "_id": {cmp: query.cursor.id}},
                    ]
                })

    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def to_mongo_update(data: Dict[str, Any]) -> Dict[str, Any]:
    """Split field values into $set, $inc and $currentDate sections."""
    set_fields: Dict[str, Any] = {}
    inc_fields: Dict[str, int] = {}
    now_fields: Dict[str, bool] = {}

    for key, value in data.items():
        if value is SERVER_TIMESTAMP:
            now_fields[key] = True
        elif isinstance(value, Increment):
            inc_fields[key] = value.amount
        else:
            set_fields[key] = value

    update: Dict[str, Any] = {}
    if set_fields:
        update["$set"] = set_fields
    if inc_fields:
        update["$inc"] = inc_fields
    if now_fields:
        update["$currentDate"] = now_fields
    return update


def to_mongo_document(data: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve placeholders for whole-document writes, which have no $currentDate."""
    now = datetime.now(timezone.utc)
    document = {}
    for key, value in data.items():
        if value is SERVER_TIMESTAMP:
            document[key] = now
        elif isinstance(value, Increment):
            document[key] = value.amount
        else:
            document[key] = value
    return document


def _snapshot(doc_id: str, document: Optional[Dict[str, Any]]) -> DocumentSnapshot:
    if document is None:
        return DocumentSnapshot(doc_id, None)
    data = dict(document)
    data.pop("_id", None)
    return DocumentSnapshot(doc_id, data)


class _MongoTransaction(Transaction):
    """Reads run in the session; writes are applied before the commit."""

    def __init__(self, store: "MongoDocumentStore", session):
        self._store = store
        self._session = session
        self.writes: List[BatchWrite] = []

    async def get(self, path: str, doc_id: str) -> DocumentSnapshot:
        document = await self._store._collection(path).find_one({"_id": doc_id}, session=self._session)
        return _snapshot(doc_id, document)

    def set(self, path: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        self.writes.append(BatchWrite("set", path, doc_id, dict(data), merge))

    def update(self, path: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.writes.append(BatchWrite("update", path, doc_id, dict(data)))

    def delete(self, path: str, doc_id: str) -> None:
        self.writes.append(BatchWrite("delete", path, doc_id))


class MongoDocumentStore(DocumentStore):
    """
    MongoDB-backed document store.

    Args:
        mongodb_url: Connection string
        database: Database name
        client: Pre-built AsyncMongoClient (takes precedence over the URL)
    """

    def __init__(
        self,
        mongodb_url: Optional[str] = None,
        database: str = "milo",
        client: Optional[AsyncMongoClient] = None
    ):
        if client is None:
            if not mongodb_url:
                raise ValueError("mongodb_url is required when no client is given")
            client = AsyncMongoClient(
                mongodb_url,
                tz_aware=True,
                serverSelectionTimeoutMS=10000
            )
        self.client = client
        self.db = client[database]
        self.database = database

    def _collection(self, path: str):
        return self.db[collection_name(path)]

    async def initialize(self) -> None:
        with translate_errors("initialize"):
            await self.client.admin.command("ping")
        logger.info("mongodb_connected", database=self.database)

    def new_id(self) -> str:
        return str(ObjectId())

    async def get(self, path: str, doc_id: str) -> DocumentSnapshot:
        with translate_errors("get"):
            document = await self._collection(path).find_one({"_id": doc_id})
        return _snapshot(doc_id, document)

    async def add(self, path: str, data: Dict[str, Any]) -> str:
        doc_id = self.new_id()
        with translate_errors("add"):
            await self._collection(path).insert_one({"_id": doc_id, **to_mongo_document(data)})
        return doc_id

    async def set(self, path: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        with translate_errors("set"):
            await self._write(BatchWrite("set", path, doc_id, data, merge), session=None)

    async def update(self, path: str, doc_id: str, data: Dict[str, Any]) -> None:
        with translate_errors("update"):
            await self._write(BatchWrite("update", path, doc_id, data), session=None)

    async def delete(self, path: str, doc_id: str) -> None:
        with translate_errors("delete"):
            await self._collection(path).delete_one({"_id": doc_id})

    async def _write(self, write: BatchWrite, session) -> None:
        collection = self._collection(write.path)

        if write.kind == "set" and write.merge:
            await collection.update_one(
                {"_id": write.doc_id},
                to_mongo_update(write.data),
                upsert=True,
                session=session
            )
        elif write.kind == "set":
            await collection.replace_one(
                {"_id": write.doc_id},
                to_mongo_document(write.data),
                upsert=True,
                session=session
            )
        elif write.kind == "update":
            result = await collection.update_one(
                {"_id": write.doc_id},
                to_mongo_update(write.data),
                session=session
            )
            if result.matched_count == 0:
                raise StoreError(
                    StoreErrorCode.NOT_FOUND,
                    f"No document to update: {write.path}/{write.doc_id}"
                )
        elif write.kind == "delete":
            await collection.delete_one({"_id": write.doc_id}, session=session)
        else:
            raise StoreError(StoreErrorCode.INVALID_ARGUMENT, f"Unknown write kind: {write.kind}")

    async def run_query(self, query: Query) -> List[DocumentSnapshot]:
        with translate_errors("run_query"):
            cursor = self._collection(query.path).find(to_mongo_filter(query))
            if query.order_field is not None:
                direction = DESCENDING if query.descending else ASCENDING
                cursor = cursor.sort([(query.order_field, direction), ("_id", direction)])
            if query.limit_count is not None:
                cursor = cursor.limit(query.limit_count)
            documents = await cursor.to_list(None)
        return [_snapshot(document["_id"], document) for document in documents]

    async def count(self, query: Query) -> int:
        kwargs = {}
        if query.limit_count is not None:
            kwargs["limit"] = query.limit_count
        with translate_errors("count"):
            return await self._collection(query.path).count_documents(to_mongo_filter(query), **kwargs)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[R]]) -> R:
        async def callback(session):
            transaction = _MongoTransaction(self, session)
            result = await fn(transaction)
            for write in transaction.writes:
                await self._write(write, session)
            return result

        with translate_errors("run_transaction"):
            async with self.client.start_session() as session:
                return await session.with_transaction(callback)

    async def commit_batch(self, batch: WriteBatch) -> None:
        async def callback(session):
            for write in batch.writes:
                await self._write(write, session)

        with translate_errors("commit_batch"):
            async with self.client.start_session() as session:
                await session.with_transaction(callback)

    async def watch(self, query: Query) -> AsyncIterator[List[DocumentSnapshot]]:
        with translate_errors("watch"):
            async with await self._collection(query.path).watch() as stream:
                logger.debug("mongodb_watch_opened", collection=collection_name(query.path))
                yield await self.run_query(query)
                async for _change in stream:
                    yield await self.run_query(query)

    async def close(self) -> None:
        await self.client.close()
        logger.info("mongodb_closed", database=self.database)
