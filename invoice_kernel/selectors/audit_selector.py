"""
Module: invoice_kernel.selectors.audit_selector
Responsibility: Read the append-only audit trail for display, newest first.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Entries are ordered by timestamp descending, then id descending, so
      the entries of one operation read in reverse staging order.
"""

from typing import Any

from invoice_kernel.domain.audit_actions import format_action_name
from invoice_kernel.domain.invoice import AuditEntry
from invoice_kernel.domain.settings import DEFAULT_SETTINGS, EditSettings
from invoice_kernel.models.document import Collection
from invoice_kernel.selectors.base import BaseSelector
from invoice_kernel.store.base import DocumentStore


class AuditSelector(BaseSelector):
    """Queries over the ``audit_trail`` collection."""

    def __init__(self, store: DocumentStore, settings: EditSettings = DEFAULT_SETTINGS):
        super().__init__(store)
        self._settings = settings

    def _entries(self, where: dict[str, Any] | None, limit: int) -> list[AuditEntry]:
        documents = self.store.query(Collection.AUDIT_TRAIL, where=where)
        documents.sort(key=lambda doc: (doc.get("timestamp") or "", doc.id), reverse=True)
        return [AuditEntry.from_document(doc.id, doc.data) for doc in documents[:limit]]

    def invoice_history(self, invoice_id: str, limit: int | None = None) -> list[AuditEntry]:
        """Entries for one invoice, newest first."""
        return self._entries(
            {"invoiceId": invoice_id},
            limit if limit is not None else self._settings.audit_history_limit,
        )

    def recent_entries(self, limit: int | None = None) -> list[AuditEntry]:
        """Most recent entries across all invoices."""
        return self._entries(
            None, limit if limit is not None else self._settings.audit_recent_limit
        )

    def operation_entries(self, operation_id: str) -> list[AuditEntry]:
        """Every entry written by one operation, in staging order."""
        documents = self.store.query(
            Collection.AUDIT_TRAIL, where={"operationId": operation_id}
        )
        return [AuditEntry.from_document(doc.id, doc.data) for doc in documents]

    @staticmethod
    def format_for_display(entry: AuditEntry) -> dict[str, Any]:
        return {
            "id": entry.id,
            "actionName": format_action_name(entry.action),
            "summary": entry.summary,
            "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
            "invoiceNumber": entry.invoice_number,
            "category": entry.category,
        }
