"""
Kernel invariants contract.

These rules are structural law for every committed invoice mutation.  No
setting may relax them.  The atomic mutator calls
``assert_commit_invariants`` after validation and immediately before it
builds the batch; a violation aborts the operation with
``InvariantViolationError`` and nothing is written.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal
from enum import Enum, unique

from invoice_kernel.domain.invoice import Invoice, StockChange
from invoice_kernel.domain.money import amounts_match
from invoice_kernel.exceptions import InvariantViolationError


@unique
class KernelInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    NON_NEGATIVE_STOCK = "non_negative_stock"
    """``unitStock`` is never negative after a committed change."""

    MONOTONIC_VERSION = "monotonic_version"
    """Every committed edit sets ``version = original.version + 1``.
    Enforced here and by the batch's version precondition."""

    STOCK_MATCHES_DIFF = "stock_matches_diff"
    """The committed stock deltas equal the per-part diff of the invoice."""

    TOTAL_MATCHES_LINES = "total_matches_lines"
    """``totalAmount`` equals the sum of line totals within one minor unit."""

    ATOMIC_AUDIT = "atomic_audit"
    """Audit entries for a mutation commit in the mutation's own batch.
    Enforced structurally by AtomicMutator."""

    PART_EXISTS = "part_exists"
    """Every line references a part that exists at commit time.
    Enforced by the edit validator and the batch's part updates."""

    SINGLE_WRITER_SESSION = "single_writer_session"
    """One open edit session per editor.  Enforced by InvoiceEditor."""


ALL_KERNEL_INVARIANTS: frozenset[KernelInvariant] = frozenset(KernelInvariant)

# The kernel package may not import from these packages.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = ("invoice_config",)


def check_non_negative_stock(stock_changes: Iterable[StockChange]) -> None:
    for change in stock_changes:
        if change.quantity_after < 0:
            raise InvariantViolationError(
                KernelInvariant.NON_NEGATIVE_STOCK.value,
                f"part {change.part_id} would have stock {change.quantity_after}",
            )
        if change.quantity_after != change.quantity_before + change.delta:
            raise InvariantViolationError(
                KernelInvariant.NON_NEGATIVE_STOCK.value,
                f"part {change.part_id} stock {change.quantity_before} + {change.delta} "
                f"written as {change.quantity_after}",
            )


def check_version_increment(original: Invoice, updated: Invoice) -> None:
    if updated.version != original.version + 1:
        raise InvariantViolationError(
            KernelInvariant.MONOTONIC_VERSION.value,
            f"version {original.version} -> {updated.version}",
        )


def check_stock_matches_diff(
    stock_changes: Iterable[StockChange],
    expected_impact: Mapping[str, int],
    skipped_part_ids: Iterable[str] = (),
) -> None:
    written = {change.part_id: change.delta for change in stock_changes}
    skipped = set(skipped_part_ids)
    expected = {part_id: delta for part_id, delta in expected_impact.items() if part_id not in skipped}
    if written != expected:
        raise InvariantViolationError(
            KernelInvariant.STOCK_MATCHES_DIFF.value,
            f"stock deltas {written} do not match invoice diff {expected}",
        )


def check_total_matches_lines(invoice: Invoice, tolerance: Decimal) -> None:
    if not amounts_match(invoice.items_total, invoice.total_amount, tolerance):
        raise InvariantViolationError(
            KernelInvariant.TOTAL_MATCHES_LINES.value,
            f"total {invoice.total_amount} != line sum {invoice.items_total}",
        )


def assert_commit_invariants(
    original: Invoice,
    updated: Invoice,
    stock_changes: Iterable[StockChange],
    expected_impact: Mapping[str, int],
    tolerance: Decimal,
    skipped_part_ids: Iterable[str] = (),
) -> None:
    """
    Raise InvariantViolationError if the pending edit would break a rule.

    ``skipped_part_ids`` are parts no longer in the catalogue whose lines
    were removed; they have no stock to restore.
    """
    stock_changes = tuple(stock_changes)
    check_non_negative_stock(stock_changes)
    check_version_increment(original, updated)
    check_stock_matches_diff(stock_changes, expected_impact, skipped_part_ids)
    check_total_matches_lines(updated, tolerance)
