"""
Document Store Adapters
"""

from milo_nudges.services.store.base import (
    MAX_BATCH_SIZE,
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    FieldFilter,
    FilterOp,
    Increment,
    Query,
    StoreError,
    StoreErrorCode,
    Transaction,
    WriteBatch,
)
from milo_nudges.services.store.memory import MemoryDocumentStore

__all__ = [
    "MAX_BATCH_SIZE",
    "SERVER_TIMESTAMP",
    "DocumentSnapshot",
    "DocumentStore",
    "FieldFilter",
    "FilterOp",
    "Increment",
    "Query",
    "StoreError",
    "StoreErrorCode",
    "Transaction",
    "WriteBatch",
    "MemoryDocumentStore",
]
