"""
Tests for AtomicMutator: the single write path for edits and deletions.

Scenarios follow the workshop flows: increase a quantity, add a part,
conflicting saves, deletion, insufficient stock and line removal.
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from invoice_kernel.domain.invoice import LineItem
from invoice_kernel.exceptions import InvariantViolationError, StoreUnavailableError
from invoice_kernel.models.document import Collection
from invoice_kernel.services import (
    AtomicMutator,
    ConflictReason,
    MutationPhase,
    MutationStatus,
)
from invoice_kernel.services import atomic_mutator as atomic_mutator_module


def lines(*items):
    return [LineItem.of(pid, f"Part {pid}", qty, price) for pid, qty, price in items]


@pytest.fixture
def other_mutator(store, clock, settings):
    """A second actor sharing the same store."""
    return AtomicMutator(store, clock=clock, session_id="session_other", settings=settings)


class TestEditScenarios:
    def test_increase_quantity(self, mutator, seed, make_part, make_invoice, invoices, stock_of, store, audit_docs):
        part = make_part("P1", 10)
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[original])

        result = mutator.edit_invoice(
            original.id, original.with_items(lines(("P1", 5, "5.00"))), [part], original
        )

        assert result.ok
        assert result.status == MutationStatus.COMMITTED
        saved = invoices.get_invoice(original.id)
        assert saved.version == 2
        assert saved.edit_count == 1
        assert saved.items[0].quantity == 5
        assert saved.total_amount == Decimal("25.00")
        assert stock_of("P1") == 7

        assert store.get(Collection.PARTS, "P1").get("lastStockChange")["operationId"] == result.operation_id
        assert saved.last_edit_session.operation_id == result.operation_id

        actions = sorted(d.get("action") for d in audit_docs(operationId=result.operation_id))
        assert actions == ["invoice_edit_completed", "part_modified"]

        (change,) = result.stock_changes
        assert (change.quantity_before, change.quantity_after, change.delta) == (10, 7, -3)
        assert change.reason.value == "allocate"

    def test_add_part(self, mutator, seed, make_part, make_invoice, invoices, stock_of, audit_docs):
        parts = [make_part("P1", 10), make_part("P2", 4)]
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=parts, invoices=[original])

        modified = original.with_items(lines(("P1", 2, "5.00"), ("P2", 3, "7.00")))
        result = mutator.edit_invoice(original.id, modified, parts, original)

        assert result.ok
        saved = invoices.get_invoice(original.id)
        assert saved.total_amount == Decimal("31.00")
        assert stock_of("P2") == 1
        assert stock_of("P1") == 10
        actions = sorted(d.get("action") for d in audit_docs(operationId=result.operation_id))
        assert actions == ["invoice_edit_completed", "part_added"]

    def test_conflicting_save(self, mutator, other_mutator, seed, make_part, make_invoice, invoices, stock_of, audit_docs):
        part = make_part("P1", 10)
        v1 = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[v1])

        theirs = other_mutator.edit_invoice(v1.id, replace(v1, notes="called customer"), [part], v1)
        assert theirs.ok

        result = mutator.edit_invoice(v1.id, v1.with_items(lines(("P1", 4, "5.00"))), [part], v1)

        assert not result.ok
        assert result.status == MutationStatus.CONFLICTED
        assert result.remote.version == 2
        assert result.conflict.reason == ConflictReason.VERSION_CONFLICT
        assert invoices.get_invoice(v1.id).version == 2
        assert invoices.get_invoice(v1.id).items[0].quantity == 2
        assert stock_of("P1") == 10

        (error_entry,) = audit_docs(operationId=result.operation_id)
        assert error_entry.get("action") == "error_occurred"
        assert error_entry.get("details")["errorCode"] == "VERSION_CONFLICT"

    def test_insufficient_stock(self, mutator, seed, make_part, make_invoice, invoices, stock_of, audit_docs):
        part = make_part("P1", 2)
        original = make_invoice(items=[("P1", 1, "5.00")])
        seed(parts=[part], invoices=[original])

        result = mutator.edit_invoice(
            original.id, original.with_items(lines(("P1", 10, "5.00"))), [part], original
        )

        assert result.status == MutationStatus.INVALID
        (error,) = result.validation.errors
        assert error.code == "INSUFFICIENT_STOCK"
        assert error.part_id == "P1"
        assert (error.details["required"], error.details["available"]) == (9, 2)
        assert invoices.get_invoice(original.id).version == 1
        assert stock_of("P1") == 2

        (entry,) = audit_docs(operationId=result.operation_id)
        assert entry.get("details")["errorCode"] == "VALIDATION_FAILED"

    def test_remove_line(self, mutator, seed, make_part, make_invoice, invoices, stock_of, audit_docs):
        parts = [make_part("P1", 8), make_part("P2", 0)]
        original = make_invoice(items=[("P1", 2, "5.00"), ("P2", 1, "7.00")])
        seed(parts=parts, invoices=[original])

        result = mutator.edit_invoice(
            original.id, original.with_items(lines(("P1", 2, "5.00"))), parts, original
        )

        assert result.ok
        assert invoices.get_invoice(original.id).quantities_by_part() == {"P1": 2}
        assert stock_of("P2") == 1
        assert stock_of("P1") == 8
        removal = [d for d in audit_docs(operationId=result.operation_id) if d.get("action") == "part_removed"]
        assert [d.get("details")["partId"] for d in removal] == ["P2"]


class TestEditMechanics:
    def test_phases_reported_in_order(self, mutator, seed, make_part, make_invoice):
        part = make_part("P1", 10)
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[original])
        phases = []

        mutator.edit_invoice(original.id, original, [part], original, on_phase=phases.append)

        assert phases == [
            MutationPhase.CONFLICT_CHECK,
            MutationPhase.VALIDATING,
            MutationPhase.COMMITTING,
        ]

    def test_no_op_edit_still_bumps_version(self, mutator, seed, make_part, make_invoice, invoices, audit_docs):
        part = make_part("P1", 10)
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[original])

        result = mutator.edit_invoice(original.id, original, [part], original)

        assert result.ok
        assert result.stock_changes == ()
        assert invoices.get_invoice(original.id).version == 2
        assert len(audit_docs(operationId=result.operation_id)) == 1

    def test_audit_ids_are_deterministic_per_operation(self, mutator, seed, make_part, make_invoice):
        parts = [make_part("P1", 10), make_part("P2", 10)]
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=parts, invoices=[original])

        modified = original.with_items(lines(("P1", 3, "5.00"), ("P2", 1, "1.00")))
        result = mutator.edit_invoice(original.id, modified, parts, original)

        op = result.operation_id
        assert result.audit_entry_ids == (f"audit_{op}_000", f"audit_{op}_001", f"audit_{op}_002")

    def test_commit_race_becomes_conflict(self, mutator, other_mutator, seed, make_part, make_invoice, invoices, stock_of):
        part = make_part("P1", 10)
        v1 = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[v1])

        def race(phase):
            if phase == MutationPhase.COMMITTING:
                assert other_mutator.edit_invoice(v1.id, replace(v1, notes="race"), [part], v1).ok

        result = mutator.edit_invoice(
            v1.id, v1.with_items(lines(("P1", 5, "5.00"))), [part], v1, on_phase=race
        )

        assert result.status == MutationStatus.CONFLICTED
        assert result.remote.version == 2
        saved = invoices.get_invoice(v1.id)
        assert saved.notes == "race"
        assert saved.items[0].quantity == 2
        assert stock_of("P1") == 10

    def test_store_failure_writes_nothing(self, mutator, store, seed, make_part, make_invoice, invoices, stock_of, monkeypatch, captured_logs):
        part = make_part("P1", 10)
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[original])

        def down(operations):
            raise StoreUnavailableError("commit", "connection refused")

        monkeypatch.setattr(store, "_commit", down)
        result = mutator.edit_invoice(
            original.id, original.with_items(lines(("P1", 5, "5.00"))), [part], original
        )
        monkeypatch.undo()

        assert result.status == MutationStatus.FAILED
        assert result.error.code == "UNAVAILABLE"
        assert invoices.get_invoice(original.id).version == 1
        assert stock_of("P1") == 10
        messages = [r["message"] for r in captured_logs()]
        assert "invoice_mutation_failed" in messages
        assert "audit_write_failed" in messages

    def test_unreadable_invoice_fails_with_error_audit(self, mutator, store, seed, make_part, make_invoice, invoices, stock_of, monkeypatch, audit_docs):
        part = make_part("P1", 10)
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[original])

        def unreachable(collection, doc_id):
            raise StoreUnavailableError("get", "connection refused")

        monkeypatch.setattr(store, "get", unreachable)
        result = mutator.edit_invoice(
            original.id, original.with_items(lines(("P1", 5, "5.00"))), [part], original
        )
        monkeypatch.undo()

        assert result.status == MutationStatus.FAILED
        assert result.error.code == "UNAVAILABLE"
        assert result.validation is None
        assert invoices.get_invoice(original.id).version == 1
        assert stock_of("P1") == 10
        errors = audit_docs(action="error_occurred")
        assert len(errors) == 1
        assert errors[0].get("operationId") == result.operation_id

    def test_invariant_violation_fails_before_commit(self, mutator, seed, make_part, make_invoice, invoices, monkeypatch, captured_logs):
        part = make_part("P1", 10)
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[original])

        def broken(*args, **kwargs):
            raise InvariantViolationError("stock_matches_diff", "forced")

        monkeypatch.setattr(atomic_mutator_module, "assert_commit_invariants", broken)
        result = mutator.edit_invoice(original.id, original, [part], original)

        assert result.status == MutationStatus.FAILED
        assert invoices.get_invoice(original.id).version == 1
        assert any(
            r["message"] == "invariant_violated" and r["level"] == "CRITICAL" for r in captured_logs()
        )

    def test_removing_line_of_deleted_part(self, mutator, seed, make_part, make_invoice, invoices, stock_of):
        part = make_part("P1", 5)
        original = make_invoice(items=[("P1", 1, "5.00"), ("GONE", 2, "3.00")])
        seed(parts=[part], invoices=[original])

        result = mutator.edit_invoice(
            original.id, original.with_items(lines(("P1", 1, "5.00"))), [part], original
        )

        assert result.ok
        assert result.stock_changes == ()
        assert stock_of("GONE") is None

    def test_resolution_strategy_adds_audit_entry(self, mutator, seed, make_part, make_invoice, audit_docs):
        part = make_part("P1", 10)
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[original])

        result = mutator.edit_invoice(
            original.id, replace(original, notes="merged"), [part], original, resolution_strategy="merge"
        )

        assert result.ok
        last = result.audit_entry_ids[-1]
        (doc,) = [d for d in audit_docs(operationId=result.operation_id) if d.id == last]
        assert doc.get("action") == "conflict_resolved"
        assert doc.get("details")["strategy"] == "merge"

    def test_legacy_fields_kept_on_save(self, mutator, store, make_part, make_invoice, seed):
        part = make_part("P1", 10)
        original = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part])
        store.batch().set(
            Collection.INVOICES, original.id, {**original.to_document(), "workshopBay": "B2"}
        ).commit()

        assert mutator.edit_invoice(original.id, original, [part], original).ok
        assert store.get(Collection.INVOICES, original.id).get("workshopBay") == "B2"


class TestDelete:
    def test_delete_restores_stock(self, mutator, seed, make_part, make_invoice, invoices, stock_of, audit_docs):
        parts = [make_part("P1", 7), make_part("P2", 4)]
        invoice = make_invoice(items=[("P1", 3, "5.00"), ("P2", 1, "7.00")])
        seed(parts=parts, invoices=[invoice])

        result = mutator.delete_invoice(invoice.id, invoice, parts)

        assert result.ok
        assert invoices.get_invoice(invoice.id) is None
        assert stock_of("P1") == 10
        assert stock_of("P2") == 5

        (entry,) = audit_docs(operationId=result.operation_id)
        assert entry.get("action") == "invoice_deleted"
        restored = {c["partId"]: c["delta"] for c in entry.get("stockChanges")}
        assert restored == {"P1": 3, "P2": 1}
        assert all(c["reason"] == "restore" for c in entry.get("stockChanges"))

    def test_delete_skips_missing_parts(self, mutator, seed, make_part, make_invoice, stock_of):
        part = make_part("P1", 0)
        invoice = make_invoice(items=[("P1", 1, "5.00"), ("GONE", 2, "3.00")])
        seed(parts=[part], invoices=[invoice])

        result = mutator.delete_invoice(invoice.id, invoice, [part])

        assert result.ok
        assert result.skipped_part_ids == ("GONE",)
        assert [w.code for w in result.warnings] == ["PART_NOT_FOUND"]
        assert stock_of("P1") == 1

    def test_delete_paid_invoice_warns(self, mutator, seed, make_part, make_invoice):
        part = make_part("P1", 0)
        invoice = make_invoice(items=[("P1", 1, "5.00")], payment_status="paid")
        seed(parts=[part], invoices=[invoice])

        result = mutator.delete_invoice(invoice.id, invoice, [part])

        assert result.ok
        assert "PAID_INVOICE_DELETED" in [w.code for w in result.warnings]

    def test_delete_stale_snapshot_conflicts(self, mutator, other_mutator, seed, make_part, make_invoice, invoices, stock_of):
        part = make_part("P1", 10)
        v1 = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[v1])
        assert other_mutator.edit_invoice(v1.id, replace(v1, notes="x"), [part], v1).ok

        result = mutator.delete_invoice(v1.id, v1, [part])

        assert result.status == MutationStatus.CONFLICTED
        assert invoices.get_invoice(v1.id) is not None
        assert stock_of("P1") == 10

    def test_delete_already_deleted(self, mutator, seed, make_part, make_invoice):
        part = make_part("P1", 10)
        invoice = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[invoice])
        assert mutator.delete_invoice(invoice.id, invoice, [part]).ok

        result = mutator.delete_invoice(invoice.id, invoice, [part])

        assert result.status == MutationStatus.CONFLICTED
        assert result.conflict.reason == ConflictReason.INVOICE_DELETED

    def test_delete_unreadable_invoice_fails_with_error_audit(self, mutator, store, seed, make_part, make_invoice, invoices, stock_of, monkeypatch, audit_docs):
        part = make_part("P1", 10)
        invoice = make_invoice(items=[("P1", 2, "5.00")])
        seed(parts=[part], invoices=[invoice])

        def unreachable(collection, doc_id):
            raise StoreUnavailableError("get", "connection refused")

        monkeypatch.setattr(store, "get", unreachable)
        result = mutator.delete_invoice(invoice.id, invoice, [part])
        monkeypatch.undo()

        assert result.status == MutationStatus.FAILED
        assert result.error.code == "UNAVAILABLE"
        assert invoices.get_invoice(invoice.id) is not None
        assert stock_of("P1") == 10
        assert len(audit_docs(action="error_occurred")) == 1
