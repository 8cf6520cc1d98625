"""
AuditRecorder -- builds and appends immutable audit entries.

Responsibility:
    Turns invoice lifecycle events (edit started, edit completed, deletion,
    stock operation, conflict resolution, payment, error) into
    ``AuditEntry`` values with a pre-formatted summary, and writes them to
    the ``audit_trail`` collection.

Architecture position:
    Kernel > Services -- imperative shell, called by AtomicMutator,
    InvoiceEditor and PaymentService.

Invariants enforced:
    - Append-only: entries are only ever ``set`` on new ids; the store and
      the ORM listeners refuse updates and deletes on ``audit_trail``.
    - Entries describing a mutation are staged into the mutation's own batch
      (``stage``), so they commit or vanish with it.
    - Every entry carries the recorder's session id, the operation id, a
      timestamp from the injected clock, an action, a category and a summary.

Failure modes:
    - ``append`` propagates ``StoreError`` / ``DocumentAlreadyExistsError``.
    - ``append_best_effort`` logs and swallows them; it is used for error
      entries, which must never mask the error they describe.

Audit relevance:
    This IS the audit recorder.  ``AuditSelector`` reads what it writes.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from invoice_kernel.domain.audit_actions import AuditAction, AuditCategory, summarize
from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.domain.identifiers import audit_entry_id, standalone_audit_id
from invoice_kernel.domain.invoice import AuditEntry, Invoice, StockChange, money_field
from invoice_kernel.domain.settings import DEFAULT_SETTINGS, EditSettings
from invoice_kernel.exceptions import DocumentAlreadyExistsError, StoreError
from invoice_kernel.logging_config import get_logger
from invoice_kernel.models.document import Collection
from invoice_kernel.store.base import DocumentStore, WriteBatch

logger = get_logger("services.audit_recorder")


def _customer_changes(original: Invoice, updated: Invoice) -> dict[str, dict[str, Any]]:
    changes = {}
    for name in ("name", "contact", "address"):
        before = getattr(original.customer, name)
        after = getattr(updated.customer, name)
        if before != after:
            changes[name] = {"from": before, "to": after}
    return changes


def _item_changes(original: Invoice, updated: Invoice) -> list[dict[str, Any]]:
    before = original.quantities_by_part()
    after = updated.quantities_by_part()
    changes = []
    for part_id in sorted(set(before) | set(after)):
        delta = after.get(part_id, 0) - before.get(part_id, 0)
        if delta:
            changes.append(
                {
                    "partId": part_id,
                    "quantityBefore": before.get(part_id, 0),
                    "quantityAfter": after.get(part_id, 0),
                    "quantityDelta": delta,
                }
            )
    return changes


class AuditRecorder:
    """
    Builds audit entries and writes them append-only.

    Contract:
        ``record_*`` methods only BUILD entries; nothing is written until
        the caller stages them into a batch or calls ``append``.

    Non-goals:
        - Does NOT read the trail (see ``AuditSelector``).
        - Does NOT decide whether an operation succeeded.
    """

    def __init__(
        self,
        store: DocumentStore,
        session_id: str,
        clock: Clock | None = None,
        settings: EditSettings = DEFAULT_SETTINGS,
    ):
        self._store = store
        self._session_id = session_id
        self._clock = clock or SystemClock()
        self._settings = settings

    @property
    def session_id(self) -> str:
        return self._session_id

    # ------------------------------------------------------------------
    # Entry construction
    # ------------------------------------------------------------------

    def _build(
        self,
        action: str,
        category: AuditCategory,
        details: Mapping[str, Any],
        *,
        operation_id: str,
        entry_index: int | None = None,
        invoice_id: str | None = None,
        invoice_number: str | None = None,
        stock_changes: Iterable[StockChange] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEntry:
        entry_id = (
            audit_entry_id(operation_id, entry_index)
            if entry_index is not None
            else standalone_audit_id(operation_id)
        )
        return AuditEntry(
            id=entry_id,
            timestamp=self._clock.now(),
            session_id=self._session_id,
            operation_id=operation_id,
            action=str(getattr(action, "value", action)),
            category=category.value,
            summary=summarize(action, details, invoice_number, self._settings.currency),
            invoice_id=invoice_id,
            invoice_number=invoice_number,
            details=dict(details),
            stock_changes=tuple(stock_changes) if stock_changes is not None else None,
            metadata=dict(metadata or {}),
        )

    def record_edit_start(
        self,
        invoice_id: str,
        snapshot: Invoice,
        *,
        operation_id: str,
        edit_session_id: str | None = None,
    ) -> AuditEntry:
        """Entry for opening an edit session on ``snapshot``."""
        return self._build(
            AuditAction.INVOICE_EDIT_STARTED,
            AuditCategory.INVOICE_EDITING,
            {
                "originalVersion": snapshot.version,
                "editSessionId": edit_session_id,
                "originalData": snapshot.content_document(),
            },
            operation_id=operation_id,
            invoice_id=invoice_id,
            invoice_number=snapshot.number,
            metadata={"source": "edit_session", "editReason": "user_initiated"},
        )

    def record_edit_completion(
        self,
        original: Invoice,
        updated: Invoice,
        stock_changes: Iterable[StockChange],
        *,
        operation_id: str,
        line_counts: Mapping[str, int] | None = None,
        entry_index: int = 0,
    ) -> AuditEntry:
        """
        Entry for a committed edit.

        ``changesApplied`` counts changed sections (customer, items, notes)
        plus added/removed/modified lines; ``totalAmountChange`` gives the
        before/after totals and their difference.
        """
        counts = dict(line_counts or {})
        customer_changes = _customer_changes(original, updated)
        item_changes = _item_changes(original, updated)
        items_changed = bool(item_changes) or any(counts.values())
        sections = {
            "customerInfo": bool(customer_changes),
            "items": items_changed,
            "notes": original.notes != updated.notes,
        }
        stock_changes = tuple(stock_changes)
        return self._build(
            AuditAction.INVOICE_EDIT_COMPLETED,
            AuditCategory.INVOICE_EDITING,
            {
                "originalVersion": original.version,
                "newVersion": updated.version,
                "changesApplied": {
                    **sections,
                    "added": counts.get("added", 0),
                    "removed": counts.get("removed", 0),
                    "modified": counts.get("modified", 0),
                    "totalChanges": sum(sections.values()),
                },
                "customerChanges": customer_changes,
                "itemChanges": item_changes,
                "totalAmountChange": {
                    "from": money_field(original.total_amount),
                    "to": money_field(updated.total_amount),
                    "difference": money_field(updated.total_amount - original.total_amount),
                },
            },
            operation_id=operation_id,
            entry_index=entry_index,
            invoice_id=updated.id,
            invoice_number=updated.number,
            stock_changes=stock_changes,
            metadata={"source": "atomic_mutator", "changeCount": len(item_changes)},
        )

    def record_deletion(
        self,
        invoice: Invoice,
        stock_changes: Iterable[StockChange],
        *,
        operation_id: str,
        entry_index: int = 0,
    ) -> AuditEntry:
        """Entry for a deleted invoice, listing every restored part."""
        stock_changes = tuple(stock_changes)
        return self._build(
            AuditAction.INVOICE_DELETED,
            AuditCategory.INVOICE_LIFECYCLE,
            {
                "deletedData": {
                    "customerName": invoice.customer.name,
                    "itemCount": len(invoice.items),
                    "totalAmount": money_field(invoice.total_amount),
                    "version": invoice.version,
                    "paymentStatus": invoice.payment_status,
                },
                "itemsRestored": [
                    {
                        "partId": change.part_id,
                        "partName": change.part_name,
                        "quantityRestored": change.delta,
                    }
                    for change in stock_changes
                ],
            },
            operation_id=operation_id,
            entry_index=entry_index,
            invoice_id=invoice.id,
            invoice_number=invoice.number,
            stock_changes=stock_changes,
            metadata={"source": "atomic_mutator", "reason": "user_initiated_deletion"},
        )

    def record_stock_operation(
        self,
        operation: str,
        changes: Iterable[StockChange],
        invoice_id: str | None = None,
        *,
        operation_id: str,
        entry_index: int | None = None,
    ) -> AuditEntry:
        """Entry for a stock movement (``stock_updated``, ``stock_restored``)."""
        changes = tuple(changes)
        return self._build(
            AuditAction.stock(operation),
            AuditCategory.STOCK_MANAGEMENT,
            {
                "operation": operation,
                "stockChanges": [change.to_document() for change in changes],
                "totalPartsAffected": len(changes),
            },
            operation_id=operation_id,
            entry_index=entry_index,
            invoice_id=invoice_id,
            stock_changes=changes,
            metadata={"source": "atomic_mutator", "batchOperation": len(changes) > 1},
        )

    def record_error(
        self,
        action: str,
        error: BaseException | str,
        context: Mapping[str, Any] | None = None,
        *,
        operation_id: str,
    ) -> AuditEntry:
        """Entry for a failed or rejected operation (never part of a batch)."""
        context = dict(context or {})
        message = str(error)
        code = getattr(error, "code", None) or context.pop("errorCode", None)
        return self._build(
            AuditAction.ERROR_OCCURRED,
            AuditCategory.ERROR_TRACKING,
            {
                "failedAction": action,
                "errorMessage": message,
                "errorCode": code,
                "errorType": type(error).__name__ if not isinstance(error, str) else None,
                "context": context,
                "recoveryAction": context.get("recoveryAction", "none"),
            },
            operation_id=operation_id,
            invoice_id=context.get("invoiceId"),
            invoice_number=context.get("invoiceNumber"),
            metadata={
                "source": "error_handler",
                "severity": context.get("severity", "medium"),
                "userImpact": context.get("userImpact", "operation_failed"),
            },
        )

    def record_conflict_resolution(
        self,
        invoice: Invoice,
        strategy: str,
        conflicts: Iterable[Any],
        *,
        operation_id: str,
        entry_index: int | None = None,
    ) -> AuditEntry:
        """Entry for the strategy a caller chose after a version conflict."""
        conflicts = tuple(conflicts)
        return self._build(
            AuditAction.CONFLICT_RESOLVED,
            AuditCategory.INVOICE_EDITING,
            {
                "strategy": str(getattr(strategy, "value", strategy)),
                "remoteVersion": invoice.version,
                "conflicts": [conflict.to_dict() for conflict in conflicts],
                "conflictCount": len(conflicts),
            },
            operation_id=operation_id,
            entry_index=entry_index,
            invoice_id=invoice.id,
            invoice_number=invoice.number,
            metadata={"source": "edit_session"},
        )

    def record_payment(
        self,
        invoice_id: str,
        invoice_number: str | None,
        transaction_id: str,
        amount: Any,
        method: str,
        *,
        operation_id: str,
        entry_index: int = 0,
    ) -> AuditEntry:
        """Entry for a recorded customer payment."""
        return self._build(
            AuditAction.PAYMENT_RECORDED,
            AuditCategory.PAYMENTS,
            {
                "transactionId": transaction_id,
                "amount": money_field(amount),
                "paymentMethod": method,
                "currency": self._settings.currency,
            },
            operation_id=operation_id,
            entry_index=entry_index,
            invoice_id=invoice_id,
            invoice_number=invoice_number,
            metadata={"source": "payment_service"},
        )

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    @staticmethod
    def stage(batch: WriteBatch, entries: Iterable[AuditEntry]) -> None:
        """Add entries to a mutation's batch."""
        for entry in entries:
            batch.set(Collection.AUDIT_TRAIL, entry.id, entry.to_document())

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Write one entry on its own."""
        batch = self._store.batch()
        self.stage(batch, [entry])
        batch.commit()
        logger.info(
            "audit_entry_appended",
            extra={"audit_id": entry.id, "action": entry.action},
        )
        return entry

    def append_best_effort(self, entry: AuditEntry) -> bool:
        """Write one entry; on failure log and return False."""
        try:
            self.append(entry)
        except (StoreError, DocumentAlreadyExistsError) as error:
            logger.warning(
                "audit_write_failed",
                extra={
                    "audit_id": entry.id,
                    "action": entry.action,
                    "error_code": getattr(error, "code", None),
                },
                exc_info=True,
            )
            return False
        return True
