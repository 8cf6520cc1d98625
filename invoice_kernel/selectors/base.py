"""
Module: invoice_kernel.selectors.base
Responsibility: Base class for read-only selectors over the document store.
Architecture position: Kernel > Selectors.  May import from store/, domain/
    and models/.  MUST NOT import from services/.

Invariants enforced:
    - Read-only access: selectors never stage or commit a write batch.
    - DTO return convention: selectors return frozen domain values, not raw
      store documents.
"""

from abc import ABC

from invoice_kernel.store.base import DocumentStore


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a DocumentStore from the caller and only read it.
    """

    def __init__(self, store: DocumentStore):
        self.store = store
