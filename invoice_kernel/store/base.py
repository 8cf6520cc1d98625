"""
Document store boundary.

Responsibility:
    The kernel's only view of persistence: read one document, query a
    collection by field equality with ordering, and commit a multi-document
    batch all-or-nothing.

Architecture position:
    Kernel > Store.  Services and selectors depend on ``DocumentStore``;
    the concrete SQL implementation and the read mirror live beside it.

Invariants enforced:
    - Append-only collections reject ``update`` and ``delete`` when the
      operation is staged, before anything reaches the backend.
    - A batch commits at most once.
    - ``require`` preconditions are evaluated inside the commit
      transaction; if any fails nothing is written.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from invoice_kernel.exceptions import ImmutabilityViolationError
from invoice_kernel.models.document import APPEND_ONLY_COLLECTIONS


def collection_name(collection: Any) -> str:
    """Accept ``Collection`` members or plain strings."""
    return str(getattr(collection, "value", collection))


@dataclass(frozen=True)
class Document:
    """A document as read from the store."""

    collection: str
    id: str
    data: dict[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


class OperationKind(str, Enum):
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"
    REQUIRE = "require"


@dataclass(frozen=True)
class BatchOperation:
    """One staged operation of a write batch."""

    kind: OperationKind
    collection: str
    doc_id: str
    data: Mapping[str, Any] = field(default_factory=dict)
    merge: bool = False
    field: str | None = None
    equals: Any = None
    missing_default: Any = None


class WriteBatch:
    """
    Staged multi-document write.

    Contract:
        Operations are recorded in call order and handed to the store in
        one ``commit()``.  Preconditions staged with ``require`` are checked
        first, inside the same transaction.

    Non-goals:
        - No partial commits and no retries.
    """

    def __init__(self, store: DocumentStore):
        self._store = store
        self._operations: list[BatchOperation] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def operations(self) -> tuple[BatchOperation, ...]:
        return tuple(self._operations)

    def set(
        self,
        collection: Any,
        doc_id: str,
        data: Mapping[str, Any],
        merge: bool = False,
    ) -> WriteBatch:
        self._operations.append(
            BatchOperation(
                kind=OperationKind.SET,
                collection=collection_name(collection),
                doc_id=doc_id,
                data=dict(data),
                merge=merge,
            )
        )
        return self

    def update(self, collection: Any, doc_id: str, fields: Mapping[str, Any]) -> WriteBatch:
        name = collection_name(collection)
        self._reject_append_only(name, doc_id, "update")
        self._operations.append(
            BatchOperation(
                kind=OperationKind.UPDATE,
                collection=name,
                doc_id=doc_id,
                data=dict(fields),
            )
        )
        return self

    def delete(self, collection: Any, doc_id: str) -> WriteBatch:
        name = collection_name(collection)
        self._reject_append_only(name, doc_id, "delete")
        self._operations.append(
            BatchOperation(kind=OperationKind.DELETE, collection=name, doc_id=doc_id)
        )
        return self

    def require(
        self,
        collection: Any,
        doc_id: str,
        field: str,
        equals: Any,
        missing_default: Any = None,
    ) -> WriteBatch:
        """
        Stage a precondition: the document exists and ``field`` equals
        ``equals`` at commit time (``missing_default`` stands in for an
        absent field).
        """
        self._operations.append(
            BatchOperation(
                kind=OperationKind.REQUIRE,
                collection=collection_name(collection),
                doc_id=doc_id,
                field=field,
                equals=equals,
                missing_default=missing_default,
            )
        )
        return self

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("Write batch already committed")
        self._committed = True
        self._store._commit(tuple(self._operations))

    @staticmethod
    def _reject_append_only(collection: str, doc_id: str, verb: str) -> None:
        if collection in APPEND_ONLY_COLLECTIONS:
            raise ImmutabilityViolationError(
                collection=collection,
                doc_id=doc_id,
                reason=f"Append-only collection does not accept {verb}",
            )


class DocumentStore(ABC):
    """Abstract document store."""

    @abstractmethod
    def get(self, collection: Any, doc_id: str) -> Document | None:
        """Read one document; ``None`` when it does not exist."""

    @abstractmethod
    def query(
        self,
        collection: Any,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        """Documents whose fields equal every ``where`` value, ordered and limited."""

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    @abstractmethod
    def _commit(self, operations: tuple[BatchOperation, ...]) -> None:
        """Apply ``operations`` atomically."""


def apply_query(
    documents: Iterable[Document],
    where: Mapping[str, Any] | None = None,
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
) -> list[Document]:
    """Filter, order and limit documents in memory."""
    selected = [
        doc
        for doc in documents
        if all(doc.data.get(key) == value for key, value in (where or {}).items())
    ]
    if order_by is not None:
        present = [doc for doc in selected if doc.data.get(order_by) is not None]
        absent = [doc for doc in selected if doc.data.get(order_by) is None]
        present.sort(key=lambda doc: doc.data[order_by], reverse=descending)
        selected = present + absent
    else:
        selected.sort(key=lambda doc: doc.id)
    if limit is not None:
        selected = selected[:limit]
    return selected


def query_key(
    collection: str,
    where: Mapping[str, Any] | None,
    order_by: str | None,
    descending: bool,
    limit: int | None,
) -> str:
    """Stable key identifying one query."""
    return json.dumps(
        [collection, dict(where or {}), order_by, descending, limit],
        sort_keys=True,
        default=str,
    )
