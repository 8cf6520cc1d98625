"""Document store boundary: abstract store, SQL implementation, read mirror."""

from invoice_kernel.store.base import (
    BatchOperation,
    Document,
    DocumentStore,
    OperationKind,
    WriteBatch,
)
from invoice_kernel.store.read_cache import ReadThroughCache
from invoice_kernel.store.sql_store import SqlDocumentStore, classify_store_error

__all__ = [
    "BatchOperation",
    "Document",
    "DocumentStore",
    "OperationKind",
    "ReadThroughCache",
    "SqlDocumentStore",
    "WriteBatch",
    "classify_store_error",
]
