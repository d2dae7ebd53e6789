"""
Document Store Interface

Collection/document addressing by slash-separated path, immutable query
builder, transactions, batched writes and live queries. Implementations
raise StoreError with a code so callers can tell transient conditions
(unavailable, deadline exceeded) from permanent failures.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

R = TypeVar("R")

MAX_BATCH_SIZE = 500


class StoreErrorCode(str, Enum):
    UNAVAILABLE = "unavailable"
    DEADLINE_EXCEEDED = "deadline-exceeded"
    NOT_FOUND = "not-found"
    ABORTED = "aborted"
    INVALID_ARGUMENT = "invalid-argument"
    UNKNOWN = "unknown"


TRANSIENT_CODES = frozenset({StoreErrorCode.UNAVAILABLE, StoreErrorCode.DEADLINE_EXCEEDED})


class StoreError(Exception):
    """Failure reported by a document store, tagged with a code."""

    def __init__(self, code: StoreErrorCode, message: str = ""):
        self.code = code
        self.message = message or code.value
        super().__init__(f"[{code.value}] {self.message}")

    @property
    def is_transient(self) -> bool:
        return self.code in TRANSIENT_CODES


class _ServerTimestamp:
    """Placeholder resolved to the store's clock when a write is applied."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    """Atomic numeric increment applied by the store."""

    amount: int = 1


class FilterOp(str, Enum):
    EQUAL = "=="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUAL = "<="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUAL = ">="
    ARRAY_CONTAINS = "array-contains"
    IS_NULL = "is-null"
    NOT_NULL = "not-null"


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: FilterOp
    value: Any = None


@dataclass(frozen=True)
class DocumentSnapshot:
    """Point-in-time read of one document; `data` is None when missing."""

    id: str
    data: Optional[Dict[str, Any]] = None

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass(frozen=True)
class Query:
    """
    Immutable query over one collection.

    Builder methods return a new Query, e.g.
        Query("users/u1/nudges").where("isActive", "==", True).order_by("createdAt").limit(10)
    """

    path: str
    filters: Tuple[FieldFilter, ...] = ()
    order_field: Optional[str] = None
    descending: bool = False
    limit_count: Optional[int] = None
    cursor: Optional[DocumentSnapshot] = None

    def where(self, field_name: str, op: str, value: Any = None) -> "Query":
        return replace(self, filters=self.filters + (FieldFilter(field_name, FilterOp(op), value),))

    def order_by(self, field_name: str, descending: bool = False) -> "Query":
        return replace(self, order_field=field_name, descending=descending)

    def limit(self, count: int) -> "Query":
        if count <= 0:
            raise ValueError("limit must be positive")
        return replace(self, limit_count=count)

    def start_after(self, snapshot: DocumentSnapshot) -> "Query":
        if self.order_field is None:
            raise ValueError("start_after requires an order_by clause")
        return replace(self, cursor=snapshot)


@dataclass(frozen=True)
class BatchWrite:
    kind: str  # "set", "update" or "delete"
    path: str
    doc_id: str
    data: Optional[Dict[str, Any]] = None
    merge: bool = False


@dataclass
class WriteBatch:
    """Writes committed atomically by DocumentStore.commit_batch."""

    writes: List[BatchWrite] = field(default_factory=list)

    def _add(self, write: BatchWrite) -> None:
        if len(self.writes) >= MAX_BATCH_SIZE:
            raise ValueError(f"A batch holds at most {MAX_BATCH_SIZE} writes")
        self.writes.append(write)

    def set(self, path: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        self._add(BatchWrite("set", path, doc_id, dict(data), merge))

    def update(self, path: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._add(BatchWrite("update", path, doc_id, dict(data)))

    def delete(self, path: str, doc_id: str) -> None:
        self._add(BatchWrite("delete", path, doc_id))

    def __len__(self) -> int:
        return len(self.writes)


class Transaction(ABC):
    """Reads and writes that commit or roll back together."""

    @abstractmethod
    async def get(self, path: str, doc_id: str) -> DocumentSnapshot:
        ...

    @abstractmethod
    def set(self, path: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        ...

    @abstractmethod
    def update(self, path: str, doc_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, path: str, doc_id: str) -> None:
        ...


class DocumentStore(ABC):
    """Asynchronous document database."""

    async def initialize(self) -> None:
        """Connect and verify the store; called once by the repository factory."""

    @abstractmethod
    def new_id(self) -> str:
        ...

    @abstractmethod
    async def get(self, path: str, doc_id: str) -> DocumentSnapshot:
        ...

    @abstractmethod
    async def add(self, path: str, data: Dict[str, Any]) -> str:
        """Insert a document under a store-assigned id and return the id."""

    @abstractmethod
    async def set(self, path: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        ...

    @abstractmethod
    async def update(self, path: str, doc_id: str, data: Dict[str, Any]) -> None:
        """
        Update fields of an existing document.

        Raises:
            StoreError: with code NOT_FOUND when the document does not exist
        """

    @abstractmethod
    async def delete(self, path: str, doc_id: str) -> None:
        ...

    @abstractmethod
    async def run_query(self, query: Query) -> List[DocumentSnapshot]:
        ...

    @abstractmethod
    async def count(self, query: Query) -> int:
        ...

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[R]]) -> R:
        ...

    def batch(self) -> WriteBatch:
        return WriteBatch()

    @abstractmethod
    async def commit_batch(self, batch: WriteBatch) -> None:
        ...

    @abstractmethod
    def watch(self, query: Query) -> AsyncIterator[List[DocumentSnapshot]]:
        """
        Live query: yields the full result set now and after every change.

        Closing the iterator releases the subscription.
        """

    async def close(self) -> None:
        """Release connections."""
