"""
AtomicMutator -- the single write path for invoice edits and deletions.

Responsibility:
    Orchestrates one invoice mutation end to end: conflict check, stock
    reconciliation, validation, kernel invariant checks and a single
    all-or-nothing batch carrying the invoice write, every part stock
    update and every audit entry that describes them.

Architecture position:
    Kernel > Services -- imperative shell.  Calls the pure engines in
    ``invoice_engines`` for every decision and owns all writes.

Invariants enforced:
    - Order within one call is fixed: conflict check, reconciliation,
      validation, batch commit.
    - Stock is only changed in the batch that changes the invoice.
    - The batch requires the stored invoice version to still equal the
      version the edit started from; a concurrent commit turns into a
      ``conflicted`` result with nothing written.
    - A committed edit sets ``version = original.version + 1`` and
      ``editCount = original.editCount + 1``.
    - Validation failures and conflicts never write invoice or part data.

Failure modes:
    - Conflicts, validation failures, invariant violations and store
      errors are returned as result values, never raised.
    - An error audit entry is written best-effort for every rejected or
      failed operation.  Its own failure is logged and swallowed.

Audit relevance:
    Successful edits commit one completion entry plus one entry per
    added, removed or modified line; deletions commit one deletion entry.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from invoice_engines.conflicts import FieldConflict, ResolutionStrategy
from invoice_engines.reconciliation import (
    analyze_edit,
    build_audit_entries,
    generate_part_updates,
    index_parts,
    missing_parts,
    restore_all,
)
from invoice_engines.validation import ValidationIssue, ValidationResult, validate_edit
from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.domain.identifiers import new_operation_id, new_session_id
from invoice_kernel.domain.invoice import (
    AuditEntry,
    EditStamp,
    Invoice,
    Part,
    PartStockStamp,
    StockChange,
    StockChangeCause,
)
from invoice_kernel.domain.settings import DEFAULT_SETTINGS, EditSettings
from invoice_kernel.exceptions import (
    DocumentError,
    InvariantViolationError,
    PreconditionFailedError,
    StoreError,
    VersionConflictError,
)
from invoice_kernel.invariants import (
    assert_commit_invariants,
    check_non_negative_stock,
    check_stock_matches_diff,
)
from invoice_kernel.logging_config import LogContext, get_logger
from invoice_kernel.models.document import Collection
from invoice_kernel.services.audit_recorder import AuditRecorder
from invoice_kernel.services.conflict_detector import (
    ConflictCheck,
    ConflictDetector,
    ConflictReason,
)
from invoice_kernel.store.base import DocumentStore, WriteBatch

logger = get_logger("services.atomic_mutator")

PAID_INVOICE_DELETED = "PAID_INVOICE_DELETED"
PART_NOT_FOUND = "PART_NOT_FOUND"


class MutationPhase(str, Enum):
    """Progress points reported to an ``on_phase`` callback."""

    CONFLICT_CHECK = "conflict_check"
    VALIDATING = "validating"
    COMMITTING = "committing"


class MutationStatus(str, Enum):
    COMMITTED = "committed"
    CONFLICTED = "conflicted"
    INVALID = "invalid"
    FAILED = "failed"


@dataclass(frozen=True)
class EditResult:
    """
    Outcome of ``edit_invoice``.

    Guarantees:
        - ``invoice`` and ``stock_changes`` are set only when committed.
        - ``conflict`` is set only when conflicted, ``validation`` whenever
          validation ran, ``error`` only when failed.
    """

    status: MutationStatus
    operation_id: str
    invoice: Invoice | None = None
    stock_changes: tuple[StockChange, ...] = ()
    conflict: ConflictCheck | None = None
    validation: ValidationResult | None = None
    error: Exception | None = None
    warnings: tuple[ValidationIssue, ...] = ()
    audit_entry_ids: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status == MutationStatus.COMMITTED

    @property
    def remote(self) -> Invoice | None:
        return self.conflict.remote if self.conflict is not None else None


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of ``delete_invoice``."""

    status: MutationStatus
    operation_id: str
    invoice_id: str
    stock_changes: tuple[StockChange, ...] = ()
    skipped_part_ids: tuple[str, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()
    conflict: ConflictCheck | None = None
    error: Exception | None = None
    audit_entry_ids: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status == MutationStatus.COMMITTED


def _notify(
    on_phase: Callable[[MutationPhase], None] | None, phase: MutationPhase
) -> None:
    if on_phase is not None:
        on_phase(phase)


class AtomicMutator:
    """
    Commits invoice edits and deletions as single atomic batches.

    Contract:
        Callers pass the snapshot their edit started from and a current
        parts snapshot.  The mutator never reads parts itself; it trusts
        the snapshot and relies on the validator and the batch to reject
        stale data.

    Non-goals:
        - Does NOT retry conflicts.  The caller chooses a resolution.
        - Does NOT hold session state (see ``InvoiceEditor``).
    """

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock | None = None,
        session_id: str | None = None,
        settings: EditSettings = DEFAULT_SETTINGS,
        audit: AuditRecorder | None = None,
        detector: ConflictDetector | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._settings = settings
        self._session_id = session_id or (
            audit.session_id if audit is not None else new_session_id(self._clock)
        )
        self._audit = audit or AuditRecorder(store, self._session_id, self._clock, settings)
        self._detector = detector or ConflictDetector(store, self._clock)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def audit(self) -> AuditRecorder:
        return self._audit

    @property
    def detector(self) -> ConflictDetector:
        return self._detector

    # ------------------------------------------------------------------
    # Edit
    # ------------------------------------------------------------------

    def edit_invoice(
        self,
        invoice_id: str,
        modified: Invoice,
        current_parts: Mapping[str, Part] | Iterable[Part],
        original_snapshot: Invoice,
        *,
        session_started_at: datetime | None = None,
        resolution_strategy: ResolutionStrategy | str | None = None,
        resolved_conflicts: Iterable[FieldConflict] = (),
        on_phase: Callable[[MutationPhase], None] | None = None,
    ) -> EditResult:
        """
        Commit ``modified`` as the next version of ``original_snapshot``.

        Args:
            invoice_id: Invoice being edited.
            modified: The invoice as the caller wants it saved.
            current_parts: Parts snapshot from the parts collaborator.
            original_snapshot: The version the edit started from.
            session_started_at: When the edit session opened.
            resolution_strategy: Strategy applied after an earlier conflict;
                adds a ``conflict_resolved`` entry to the batch.
            resolved_conflicts: The conflicts that strategy resolved.
            on_phase: Called as the edit reaches each phase.
        """
        operation_id = new_operation_id(self._clock)
        with LogContext.bind(
            operation_id=operation_id,
            session_id=self._session_id,
            invoice_id=invoice_id,
        ):
            logger.info(
                "invoice_edit_requested",
                extra={"expected_version": original_snapshot.version},
            )

            _notify(on_phase, MutationPhase.CONFLICT_CHECK)
            try:
                check = self._detector.check_before_save(
                    invoice_id,
                    original_snapshot.version,
                    snapshot=original_snapshot,
                    local=modified,
                )
            except StoreError as error:
                return self._edit_failed(error, invoice_id, modified, operation_id)
            if check.has_conflicts:
                self._record_conflict("edit_invoice", invoice_id, original_snapshot, check, operation_id)
                return EditResult(MutationStatus.CONFLICTED, operation_id, conflict=check)

            parts = index_parts(current_parts)
            analysis = analyze_edit(original_snapshot, modified, parts)
            now = self._clock.now()
            _notify(on_phase, MutationPhase.VALIDATING)
            validation = validate_edit(
                modified,
                original_snapshot,
                parts,
                analysis.impact,
                self._settings,
                now=now,
                session_started_at=session_started_at,
            )
            if not validation.is_valid:
                self._record_failure(
                    "edit_invoice",
                    "Invoice validation failed",
                    {
                        "invoiceId": invoice_id,
                        "invoiceNumber": modified.number,
                        "errorCode": "VALIDATION_FAILED",
                        "validationErrors": [issue.to_dict() for issue in validation.errors],
                        "severity": "low",
                        "recoveryAction": "fix_validation_errors",
                    },
                    operation_id,
                )
                return EditResult(
                    MutationStatus.INVALID,
                    operation_id,
                    validation=validation,
                    warnings=validation.warnings,
                )

            updated = replace(
                modified,
                version=original_snapshot.version + 1,
                edit_count=original_snapshot.edit_count + 1,
                created_at=modified.created_at or original_snapshot.created_at,
                updated_at=now,
                last_edited_at=now,
                last_edit_session=EditStamp(operation_id, self._session_id, now),
            )
            stock_changes = tuple(
                StockChange.from_update(update, operation_id, now)
                for update in analysis.updates
            )

            try:
                assert_commit_invariants(
                    original_snapshot,
                    updated,
                    stock_changes,
                    analysis.impact,
                    self._settings.total_tolerance,
                    analysis.missing_part_ids,
                )
            except InvariantViolationError as error:
                return self._edit_failed(error, invoice_id, updated, operation_id, validation)

            entries = [
                self._audit.record_edit_completion(
                    original_snapshot,
                    updated,
                    stock_changes,
                    operation_id=operation_id,
                    line_counts=analysis.diff.counts(),
                    entry_index=0,
                )
            ]
            entries.extend(
                build_audit_entries(
                    analysis.diff,
                    invoice_id,
                    self._session_id,
                    operation_id=operation_id,
                    timestamp=now,
                    invoice_number=updated.number,
                    start_index=1,
                )
            )
            if resolution_strategy is not None:
                entries.append(
                    self._audit.record_conflict_resolution(
                        updated,
                        resolution_strategy,
                        resolved_conflicts,
                        operation_id=operation_id,
                        entry_index=len(entries),
                    )
                )

            batch = self._store.batch()
            batch.require(
                Collection.INVOICES,
                invoice_id,
                "version",
                original_snapshot.version,
                missing_default=1,
            )
            batch.set(Collection.INVOICES, invoice_id, updated.to_document(), merge=True)
            self._stage_stock(batch, stock_changes, invoice_id, StockChangeCause.INVOICE_EDIT)
            self._audit.stage(batch, entries)

            _notify(on_phase, MutationPhase.COMMITTING)
            try:
                batch.commit()
            except PreconditionFailedError:
                check = self._recheck(invoice_id, original_snapshot, modified)
                self._record_conflict("edit_invoice", invoice_id, original_snapshot, check, operation_id)
                return EditResult(MutationStatus.CONFLICTED, operation_id, conflict=check)
            except (StoreError, DocumentError) as error:
                return self._edit_failed(error, invoice_id, updated, operation_id, validation)

            logger.info(
                "invoice_edit_committed",
                extra={
                    "version": updated.version,
                    "stock_changes": len(stock_changes),
                    "audit_entries": len(entries),
                },
            )
            return EditResult(
                MutationStatus.COMMITTED,
                operation_id,
                invoice=updated,
                stock_changes=stock_changes,
                validation=validation,
                warnings=validation.warnings,
                audit_entry_ids=tuple(entry.id for entry in entries),
            )

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_invoice(
        self,
        invoice_id: str,
        invoice: Invoice,
        current_parts: Mapping[str, Part] | Iterable[Part],
        on_phase: Callable[[MutationPhase], None] | None = None,
    ) -> DeleteResult:
        """
        Delete ``invoice`` and return every line's quantity to stock.

        Parts missing from ``current_parts`` are skipped and reported as
        warnings.  Deleting a paid invoice is allowed; the recorded payment
        is left untouched and a ``PAID_INVOICE_DELETED`` warning is added.
        """
        operation_id = new_operation_id(self._clock)
        with LogContext.bind(
            operation_id=operation_id,
            session_id=self._session_id,
            invoice_id=invoice_id,
        ):
            logger.info("invoice_delete_requested", extra={"expected_version": invoice.version})

            _notify(on_phase, MutationPhase.CONFLICT_CHECK)
            try:
                check = self._detector.check_before_save(
                    invoice_id, invoice.version, snapshot=invoice
                )
            except StoreError as error:
                return self._delete_failed(error, invoice_id, invoice, operation_id)
            if check.has_conflicts:
                self._record_conflict("delete_invoice", invoice_id, invoice, check, operation_id)
                return DeleteResult(
                    MutationStatus.CONFLICTED, operation_id, invoice_id, conflict=check
                )

            parts = index_parts(current_parts)
            impact = restore_all(invoice)
            skipped = missing_parts(impact, parts)
            now = self._clock.now()
            stock_changes = tuple(
                StockChange.from_update(update, operation_id, now)
                for update in generate_part_updates(impact, parts)
            )

            warnings = [
                ValidationIssue(
                    PART_NOT_FOUND,
                    f"Part with ID {part_id} no longer exists; its stock was not restored",
                    part_id=part_id,
                    details={"quantity": impact[part_id]},
                )
                for part_id in skipped
            ]
            if invoice.payment_status == "paid":
                warnings.append(
                    ValidationIssue(
                        PAID_INVOICE_DELETED,
                        "This invoice was paid. The recorded payment is not reversed.",
                        details={"invoiceId": invoice_id},
                    )
                )

            try:
                check_non_negative_stock(stock_changes)
                check_stock_matches_diff(stock_changes, impact, skipped)
            except InvariantViolationError as error:
                return self._delete_failed(error, invoice_id, invoice, operation_id, skipped, warnings)

            entry = self._audit.record_deletion(
                invoice, stock_changes, operation_id=operation_id, entry_index=0
            )

            batch = self._store.batch()
            batch.require(
                Collection.INVOICES,
                invoice_id,
                "version",
                invoice.version,
                missing_default=1,
            )
            batch.delete(Collection.INVOICES, invoice_id)
            self._stage_stock(batch, stock_changes, invoice_id, StockChangeCause.INVOICE_DELETION)
            self._audit.stage(batch, [entry])

            _notify(on_phase, MutationPhase.COMMITTING)
            try:
                batch.commit()
            except PreconditionFailedError:
                check = self._recheck(invoice_id, invoice, None)
                self._record_conflict("delete_invoice", invoice_id, invoice, check, operation_id)
                return DeleteResult(
                    MutationStatus.CONFLICTED, operation_id, invoice_id, conflict=check
                )
            except (StoreError, DocumentError) as error:
                return self._delete_failed(error, invoice_id, invoice, operation_id, skipped, warnings)

            logger.info(
                "invoice_deleted",
                extra={
                    "stock_changes": len(stock_changes),
                    "skipped_parts": list(skipped),
                },
            )
            return DeleteResult(
                MutationStatus.COMMITTED,
                operation_id,
                invoice_id,
                stock_changes=stock_changes,
                skipped_part_ids=skipped,
                warnings=tuple(warnings),
                audit_entry_ids=(entry.id,),
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _stage_stock(
        self,
        batch: WriteBatch,
        stock_changes: Iterable[StockChange],
        invoice_id: str,
        cause: StockChangeCause,
    ) -> None:
        for change in stock_changes:
            stamp = PartStockStamp(
                reason=cause.value,
                invoice_id=invoice_id,
                delta=change.delta,
                timestamp=change.timestamp,
                operation_id=change.operation_id,
            )
            batch.update(
                Collection.PARTS,
                change.part_id,
                {
                    "unitStock": change.quantity_after,
                    "updatedAt": change.timestamp.isoformat(),
                    "lastStockChange": stamp.to_document(),
                },
            )

    def _recheck(
        self, invoice_id: str, snapshot: Invoice, local: Invoice | None
    ) -> ConflictCheck:
        """Conflict details after the batch precondition rejected a commit."""
        try:
            check = self._detector.check_before_save(
                invoice_id, snapshot.version, snapshot=snapshot, local=local
            )
        except StoreError:
            logger.warning("conflict_recheck_failed", exc_info=True)
            check = None
        if check is not None and check.has_conflicts:
            return check
        return ConflictCheck(
            has_conflicts=True,
            remote=check.remote if check is not None else None,
            reason=ConflictReason.VERSION_CONFLICT,
            expected_version=snapshot.version,
            remote_version=check.remote_version if check is not None else None,
        )

    @staticmethod
    def _context(invoice_id: str, invoice: Invoice) -> dict[str, Any]:
        return {"invoiceId": invoice_id, "invoiceNumber": invoice.number}

    def _record_conflict(
        self,
        action: str,
        invoice_id: str,
        snapshot: Invoice,
        check: ConflictCheck,
        operation_id: str,
    ) -> None:
        error = VersionConflictError(invoice_id, snapshot.version, check.remote_version)
        context = self._context(invoice_id, snapshot)
        context.update(
            {
                "reason": check.reason.value if check.reason is not None else None,
                "conflictCount": len(check.conflicts),
                "severity": "low",
                "recoveryAction": "resolve_conflict",
            }
        )
        self._record_failure(action, error, context, operation_id)

    def _record_failure(
        self,
        action: str,
        error: BaseException | str,
        context: Mapping[str, Any],
        operation_id: str,
    ) -> AuditEntry:
        entry = self._audit.record_error(action, error, context, operation_id=operation_id)
        self._audit.append_best_effort(entry)
        return entry

    @staticmethod
    def _log_failure(error: Exception) -> None:
        if isinstance(error, InvariantViolationError):
            logger.critical(
                "invariant_violated",
                extra={"invariant": error.invariant, "detail": error.detail},
            )
        else:
            logger.error(
                "invoice_mutation_failed",
                extra={"error_code": getattr(error, "code", None)},
            )

    def _edit_failed(
        self,
        error: Exception,
        invoice_id: str,
        updated: Invoice,
        operation_id: str,
        validation: ValidationResult | None = None,
    ) -> EditResult:
        self._log_failure(error)
        self._record_failure(
            "edit_invoice",
            error,
            {**self._context(invoice_id, updated), "severity": "high", "recoveryAction": "retry"},
            operation_id,
        )
        return EditResult(
            MutationStatus.FAILED,
            operation_id,
            validation=validation,
            error=error,
            warnings=validation.warnings if validation is not None else (),
        )

    def _delete_failed(
        self,
        error: Exception,
        invoice_id: str,
        invoice: Invoice,
        operation_id: str,
        skipped: tuple[str, ...] = (),
        warnings: Iterable[ValidationIssue] = (),
    ) -> DeleteResult:
        self._log_failure(error)
        self._record_failure(
            "delete_invoice",
            error,
            {**self._context(invoice_id, invoice), "severity": "high", "recoveryAction": "retry"},
            operation_id,
        )
        return DeleteResult(
            MutationStatus.FAILED,
            operation_id,
            invoice_id,
            skipped_part_ids=skipped,
            warnings=tuple(warnings),
            error=error,
        )
