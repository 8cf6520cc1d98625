"""
SQLAlchemy-backed document store.

Responsibility:
    Implements ``DocumentStore`` on the ``documents`` table.  Each read runs
    in its own short session.  Each batch commits in exactly one
    transaction through ``session_scope``.

Invariants enforced:
    - Batch atomicity: every staged operation commits or none does.
    - Preconditions are read with ``SELECT ... FOR UPDATE`` (PostgreSQL)
      inside the commit transaction, before any write of the batch.
    - Append-only collections: ``set`` on an existing id raises
      ``DocumentAlreadyExistsError``; update/delete are refused by the
      batch and by the ORM listeners.

Failure modes:
    - SQLAlchemy errors are classified into ``StoreUnavailableError``,
      ``StorePermissionError`` or ``StoreUnknownError`` (original error kept
      as ``cause``).
    - ``PreconditionFailedError`` / ``DocumentNotFoundError`` /
      ``ImmutabilityViolationError`` propagate unchanged after rollback.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

from sqlalchemy import exc as sa_exc, select
from sqlalchemy.orm import Session, sessionmaker

from invoice_kernel.db.engine import session_scope
from invoice_kernel.exceptions import (
    DocumentAlreadyExistsError,
    DocumentNotFoundError,
    PreconditionFailedError,
    StoreError,
    StorePermissionError,
    StoreUnavailableError,
    StoreUnknownError,
)
from invoice_kernel.logging_config import get_logger
from invoice_kernel.models.document import APPEND_ONLY_COLLECTIONS, StoredDocument
from invoice_kernel.store.base import (
    BatchOperation,
    Document,
    DocumentStore,
    OperationKind,
    apply_query,
    collection_name,
)

logger = get_logger("store.sql")

_PERMISSION_MARKERS = (
    "permission denied",
    "insufficient privilege",
    "readonly database",
    "read-only",
    "access denied",
)

_UNAVAILABLE_TYPES = (
    sa_exc.OperationalError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
    sa_exc.InterfaceError,
)


def classify_store_error(operation: str, error: Exception) -> StoreError:
    """Map a backend exception onto the kernel's store error taxonomy."""
    origin = getattr(error, "orig", None) or error
    detail = str(origin)
    lowered = detail.lower()
    if any(marker in lowered for marker in _PERMISSION_MARKERS):
        return StorePermissionError(operation, detail, cause=error)
    if isinstance(error, _UNAVAILABLE_TYPES) or getattr(
        error, "connection_invalidated", False
    ):
        return StoreUnavailableError(operation, detail, cause=error)
    return StoreUnknownError(operation, detail, cause=error)


def _to_document(row: StoredDocument) -> Document:
    return Document(
        collection=row.collection,
        id=row.doc_id,
        data=copy.deepcopy(dict(row.data)),
    )


class SqlDocumentStore(DocumentStore):
    """
    Document store on a relational database.

    Contract:
        Receives a session factory; never holds a session between calls.

    Non-goals:
        - No server-side JSON filtering; ``query`` filters in Python, which
          is adequate for the per-invoice volumes the edit core touches.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def get(self, collection: Any, doc_id: str) -> Document | None:
        name = collection_name(collection)
        try:
            with session_scope(self._session_factory) as session:
                row = self._load(session, name, doc_id)
                return _to_document(row) if row is not None else None
        except sa_exc.SQLAlchemyError as error:
            raise self._classified("get", error) from error

    def query(
        self,
        collection: Any,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        name = collection_name(collection)
        try:
            with session_scope(self._session_factory) as session:
                rows = session.execute(
                    select(StoredDocument).where(StoredDocument.collection == name)
                ).scalars()
                documents = [_to_document(row) for row in rows]
        except sa_exc.SQLAlchemyError as error:
            raise self._classified("query", error) from error
        return apply_query(documents, where, order_by, descending, limit)

    def _commit(self, operations: tuple[BatchOperation, ...]) -> None:
        requirements = [op for op in operations if op.kind == OperationKind.REQUIRE]
        writes = [op for op in operations if op.kind != OperationKind.REQUIRE]
        try:
            with session_scope(self._session_factory) as session:
                for op in requirements:
                    self._check_requirement(session, op)
                for op in writes:
                    self._apply(session, op)
        except sa_exc.SQLAlchemyError as error:
            raise self._classified("commit", error) from error

        logger.info(
            "batch_committed",
            extra={
                "writes": len(writes),
                "preconditions": len(requirements),
                "collections": sorted({op.collection for op in writes}),
            },
        )

    # -- internals ---------------------------------------------------------

    @staticmethod
    def _classified(operation: str, error: Exception) -> StoreError:
        classified = classify_store_error(operation, error)
        logger.error(
            "store_operation_failed",
            extra={"operation": operation, "error_code": classified.code},
        )
        return classified

    @staticmethod
    def _load(
        session: Session, collection: str, doc_id: str, lock: bool = False
    ) -> StoredDocument | None:
        stmt = select(StoredDocument).where(
            StoredDocument.collection == collection,
            StoredDocument.doc_id == doc_id,
        )
        if lock:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    def _check_requirement(self, session: Session, op: BatchOperation) -> None:
        row = self._load(session, op.collection, op.doc_id, lock=True)
        actual = None if row is None else row.data.get(op.field, op.missing_default)
        if row is None or actual != op.equals:
            logger.warning(
                "batch_precondition_failed",
                extra={
                    "collection": op.collection,
                    "doc_id": op.doc_id,
                    "field": op.field,
                    "expected": op.equals,
                    "actual": actual,
                },
            )
            raise PreconditionFailedError(
                op.collection, op.doc_id, op.field, op.equals, actual
            )

    def _apply(self, session: Session, op: BatchOperation) -> None:
        row = self._load(session, op.collection, op.doc_id, lock=True)

        if op.kind == OperationKind.SET:
            data = copy.deepcopy(dict(op.data))
            if row is None:
                session.add(
                    StoredDocument(collection=op.collection, doc_id=op.doc_id, data=data)
                )
                return
            if op.collection in APPEND_ONLY_COLLECTIONS:
                raise DocumentAlreadyExistsError(op.collection, op.doc_id)
            if op.merge:
                merged = dict(row.data)
                merged.update(data)
                data = merged
            row.data = data

        elif op.kind == OperationKind.UPDATE:
            if row is None:
                raise DocumentNotFoundError(op.collection, op.doc_id)
            merged = dict(row.data)
            merged.update(copy.deepcopy(dict(op.data)))
            row.data = merged

        elif op.kind == OperationKind.DELETE:
            if row is not None:
                session.delete(row)
        # flush per operation so later operations in the batch see earlier ones
        session.flush()
