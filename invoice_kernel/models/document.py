"""
Module: invoice_kernel.models.document
Responsibility: ORM persistence for schemaless documents addressed by
    (collection, doc_id).  Every collection the edit core touches
    (invoices, parts, customer_invoices, audit_trail, quotations,
    transactions) lives in the one ``documents`` table.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (collection, doc_id) is unique.
    - Rows in append-only collections are never updated or deleted
      (ORM listeners in db/immutability.py, checked again by the store).

Audit relevance:
    ``audit_trail`` rows are the audit trail.  ``transactions`` rows record
    received payments.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from invoice_kernel.db.base import Base


class Collection(str, Enum):
    """Collections the edit core reads or writes."""

    INVOICES = "invoices"
    PARTS = "parts"
    CUSTOMER_INVOICES = "customer_invoices"
    AUDIT_TRAIL = "audit_trail"
    QUOTATIONS = "quotations"
    TRANSACTIONS = "transactions"


APPEND_ONLY_COLLECTIONS: frozenset[str] = frozenset(
    {Collection.AUDIT_TRAIL.value, Collection.TRANSACTIONS.value}
)


class StoredDocument(Base):
    """
    One document of one collection.

    Contract:
        ``data`` holds the document body exactly as written by the store
        (camelCase keys, money as decimal strings, ISO timestamps).

    Non-goals:
        - No per-field columns; queries filter the JSON body in Python.
    """

    __tablename__ = "documents"

    __table_args__ = (
        UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc"),
        Index("idx_documents_collection", "collection"),
    )

    collection: Mapped[str] = mapped_column(String(64), nullable=False)

    doc_id: Mapped[str] = mapped_column(String(255), nullable=False)

    data: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @property
    def is_append_only(self) -> bool:
        return self.collection in APPEND_ONLY_COLLECTIONS

    def __repr__(self) -> str:
        return f"<StoredDocument {self.collection}/{self.doc_id}>"
