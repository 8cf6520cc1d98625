"""
Read-through mirror over a document store.

Responsibility:
    Remember the last successful reads and serve them while the backend is
    unavailable, so an edit screen can still show what it last loaded.

Invariants enforced:
    - Writes are never accepted into the mirror.  ``batch().commit()`` goes
      to the backend; if the backend is down the ``StoreError`` reaches the
      caller and the mirror is left untouched.
    - Committed writes invalidate every mirrored read they could affect.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

from invoice_kernel.exceptions import StoreUnavailableError
from invoice_kernel.logging_config import get_logger
from invoice_kernel.store.base import (
    BatchOperation,
    Document,
    DocumentStore,
    OperationKind,
    collection_name,
    query_key,
)

logger = get_logger("store.read_cache")

_MISSING = object()


class ReadThroughCache(DocumentStore):
    """Wraps a backend store; reads fall back to the mirror on UNAVAILABLE."""

    def __init__(self, backend: DocumentStore):
        self._backend = backend
        self._documents: dict[tuple[str, str], Document | None] = {}
        self._queries: dict[str, tuple[str, list[Document]]] = {}

    @property
    def backend(self) -> DocumentStore:
        return self._backend

    def get(self, collection: Any, doc_id: str) -> Document | None:
        key = (collection_name(collection), doc_id)
        try:
            document = self._backend.get(collection, doc_id)
        except StoreUnavailableError:
            mirrored = self._documents.get(key, _MISSING)
            if mirrored is _MISSING:
                raise
            logger.warning(
                "store_read_served_from_mirror",
                extra={"collection": key[0], "doc_id": doc_id},
            )
            return copy.deepcopy(mirrored)
        self._documents[key] = copy.deepcopy(document)
        return document

    def query(
        self,
        collection: Any,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        name = collection_name(collection)
        key = query_key(name, where, order_by, descending, limit)
        try:
            documents = self._backend.query(name, where, order_by, descending, limit)
        except StoreUnavailableError:
            if key not in self._queries:
                raise
            logger.warning(
                "store_query_served_from_mirror",
                extra={"collection": name},
            )
            return copy.deepcopy(self._queries[key][1])
        self._queries[key] = (name, copy.deepcopy(documents))
        for document in documents:
            self._documents[(name, document.id)] = copy.deepcopy(document)
        return documents

    def _commit(self, operations: tuple[BatchOperation, ...]) -> None:
        self._backend._commit(operations)
        self._invalidate(operations)

    def _invalidate(self, operations: tuple[BatchOperation, ...]) -> None:
        touched = {
            (op.collection, op.doc_id)
            for op in operations
            if op.kind != OperationKind.REQUIRE
        }
        collections = {collection for collection, _ in touched}
        for key in touched:
            self._documents.pop(key, None)
        for key in [k for k, (name, _) in self._queries.items() if name in collections]:
            del self._queries[key]
