"""ORM models for the invoice kernel."""

from invoice_kernel.models.document import (
    APPEND_ONLY_COLLECTIONS,
    Collection,
    StoredDocument,
)

__all__ = [
    "APPEND_ONLY_COLLECTIONS",
    "Collection",
    "StoredDocument",
]
