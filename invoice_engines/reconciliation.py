"""
invoice_engines.reconciliation -- Stock reconciliation for invoice edits.

Responsibility:
    Compare an invoice's original and modified line items, classify each
    part as added, removed, modified or unchanged, and translate the result
    into signed per-part stock deltas, planned part updates and line-level
    audit entries.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import invoice_kernel.domain and the kernel logger.
    Consumed by the atomic mutator and the edit validator.

Invariants enforced:
    - Deterministic ordering: every output is ordered by part id ascending,
      so identical inputs always produce identical outputs.
    - Sign convention: positive impact restores stock (the invoice consumes
      less), negative impact allocates stock (the invoice consumes more).
    - Zero deltas never appear in an impact map.
    - Planned stock never goes below zero (``after = max(0, before + delta)``).

Failure modes:
    - None raised.  Parts missing from the current snapshot are skipped by
      ``generate_part_updates`` and reported by ``missing_parts`` so the
      validator can reject the edit.

Usage:
    from invoice_engines.reconciliation import analyze_edit

    analysis = analyze_edit(original.items, modified.items, current_parts)
    analysis.impact        # {"P1": -3}
    analysis.updates       # (StockUpdate(part_id="P1", before=10, after=7, delta=-3),)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from invoice_engines.tracer import traced_engine
from invoice_kernel.domain.audit_actions import AuditAction, AuditCategory, summarize
from invoice_kernel.domain.identifiers import audit_entry_id
from invoice_kernel.domain.invoice import AuditEntry, Invoice, LineItem, Part, StockUpdate
from invoice_kernel.domain.money import money_to_str, prices_equal
from invoice_kernel.logging_config import get_logger

logger = get_logger("engines.reconciliation")


class LineChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class LineChange:
    """
    How one part's line changed between two versions of an invoice.

    ``original`` is None for additions, ``modified`` is None for removals.
    """

    kind: LineChangeKind
    part_id: str
    original: LineItem | None
    modified: LineItem | None
    quantity_changed: bool = False
    price_changed: bool = False

    @property
    def part_name(self) -> str:
        item = self.modified or self.original
        return item.part_name if item is not None else ""

    @property
    def quantity_before(self) -> int:
        return self.original.quantity if self.original is not None else 0

    @property
    def quantity_after(self) -> int:
        return self.modified.quantity if self.modified is not None else 0

    @property
    def stock_delta(self) -> int:
        """Signed stock movement this line causes (positive = restore)."""
        return self.quantity_before - self.quantity_after


@dataclass(frozen=True)
class InvoiceDiff:
    """Line changes grouped by kind, each group ordered by part id."""

    added: tuple[LineChange, ...] = ()
    removed: tuple[LineChange, ...] = ()
    modified: tuple[LineChange, ...] = ()
    unchanged: tuple[LineChange, ...] = ()

    @property
    def changes(self) -> tuple[LineChange, ...]:
        """Added, then removed, then modified lines."""
        return self.added + self.removed + self.modified

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)

    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "modified": len(self.modified),
        }


@dataclass(frozen=True)
class EditAnalysis:
    """Everything the mutator needs from reconciliation, computed once."""

    diff: InvoiceDiff
    impact: dict[str, int]
    updates: tuple[StockUpdate, ...]
    missing_part_ids: tuple[str, ...]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def fold_items(items: Iterable[LineItem]) -> dict[str, LineItem]:
    """
    Collapse duplicate lines for the same part into one line.

    Quantities and line totals are summed; the first line's name and unit
    price are kept.  Result is keyed and ordered by part id.
    """
    folded: dict[str, LineItem] = {}
    for item in items:
        existing = folded.get(item.part_id)
        if existing is None:
            folded[item.part_id] = item
            continue
        folded[item.part_id] = LineItem(
            part_id=existing.part_id,
            part_name=existing.part_name,
            quantity=existing.quantity + item.quantity,
            unit_price=existing.unit_price,
            line_total=existing.line_total + item.line_total,
        )
    return {part_id: folded[part_id] for part_id in sorted(folded)}


def index_parts(parts: Mapping[str, Part] | Iterable[Part]) -> dict[str, Part]:
    """Accept either a mapping of part id to Part or an iterable of Parts."""
    if isinstance(parts, Mapping):
        return dict(parts)
    return {part.id: part for part in parts}


def _items_of(value: Invoice | Iterable[LineItem]) -> Iterable[LineItem]:
    return value.items if isinstance(value, Invoice) else value


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


@traced_engine("reconciliation", "1.0", fingerprint_fields=("original_items", "new_items"))
def diff(
    original_items: Invoice | Iterable[LineItem],
    new_items: Invoice | Iterable[LineItem],
) -> InvoiceDiff:
    """
    Classify every part referenced by either version of the invoice.

    A part present in both versions is *modified* when its quantity differs
    or its unit price differs by more than half a minor unit; otherwise it
    is *unchanged*.  A line whose part id changed is one removal plus one
    addition.
    """
    original = fold_items(_items_of(original_items))
    modified = fold_items(_items_of(new_items))

    added: list[LineChange] = []
    removed: list[LineChange] = []
    changed: list[LineChange] = []
    unchanged: list[LineChange] = []

    for part_id in sorted(set(original) | set(modified)):
        before = original.get(part_id)
        after = modified.get(part_id)
        if before is None:
            added.append(
                LineChange(
                    LineChangeKind.ADDED, part_id, None, after, quantity_changed=True
                )
            )
        elif after is None:
            removed.append(
                LineChange(
                    LineChangeKind.REMOVED, part_id, before, None, quantity_changed=True
                )
            )
        else:
            quantity_changed = before.quantity != after.quantity
            price_changed = not prices_equal(before.unit_price, after.unit_price)
            kind = (
                LineChangeKind.MODIFIED
                if quantity_changed or price_changed
                else LineChangeKind.UNCHANGED
            )
            entry = LineChange(kind, part_id, before, after, quantity_changed, price_changed)
            (changed if kind == LineChangeKind.MODIFIED else unchanged).append(entry)

    result = InvoiceDiff(
        added=tuple(added),
        removed=tuple(removed),
        modified=tuple(changed),
        unchanged=tuple(unchanged),
    )
    logger.debug("invoice_diff_computed", extra=result.counts())
    return result


def net_stock_impact(invoice_diff: InvoiceDiff) -> dict[str, int]:
    """
    Signed stock delta per part, zero deltas omitted.

    Positive values restore stock, negative values allocate it.
    """
    impact: dict[str, int] = {}
    for change in invoice_diff.changes:
        delta = change.stock_delta
        if delta:
            impact[change.part_id] = impact.get(change.part_id, 0) + delta
    return {part_id: impact[part_id] for part_id in sorted(impact) if impact[part_id]}


def restore_all(invoice: Invoice | Iterable[LineItem]) -> dict[str, int]:
    """Impact of deleting the invoice: every line's quantity goes back to stock."""
    folded = fold_items(_items_of(invoice))
    return {
        part_id: item.quantity for part_id, item in folded.items() if item.quantity > 0
    }


def missing_parts(
    impact: Mapping[str, int],
    current_parts: Mapping[str, Part] | Iterable[Part],
) -> tuple[str, ...]:
    """Part ids in ``impact`` that are absent from the parts snapshot."""
    parts = index_parts(current_parts)
    return tuple(sorted(part_id for part_id in impact if part_id not in parts))


@traced_engine("reconciliation", "1.0", fingerprint_fields=("impact",))
def generate_part_updates(
    impact: Mapping[str, int],
    current_parts: Mapping[str, Part] | Iterable[Part],
) -> tuple[StockUpdate, ...]:
    """
    Planned stock writes for every part in ``impact`` that exists.

    ``after`` is clamped at zero; the validator rejects edits that would
    need the clamp.
    """
    parts = index_parts(current_parts)
    updates: list[StockUpdate] = []
    for part_id in sorted(impact):
        part = parts.get(part_id)
        if part is None:
            logger.warning("stock_update_skipped_missing_part", extra={"part_id": part_id})
            continue
        delta = impact[part_id]
        updates.append(
            StockUpdate(
                part_id=part_id,
                part_name=part.name,
                before=part.unit_stock,
                after=max(0, part.unit_stock + delta),
                delta=delta,
            )
        )
    return tuple(updates)


_LINE_ACTIONS = {
    LineChangeKind.ADDED: AuditAction.PART_ADDED,
    LineChangeKind.REMOVED: AuditAction.PART_REMOVED,
    LineChangeKind.MODIFIED: AuditAction.PART_MODIFIED,
}


def build_audit_entries(
    invoice_diff: InvoiceDiff,
    invoice_id: str,
    session_id: str,
    *,
    operation_id: str,
    timestamp: datetime,
    invoice_number: str | None = None,
    start_index: int = 1,
) -> tuple[AuditEntry, ...]:
    """
    One audit entry per added, removed or modified line.

    Entry ids are ``audit_<operationId>_<nnn>`` counting up from
    ``start_index`` so a retry of the same operation cannot create
    duplicates.
    """
    entries: list[AuditEntry] = []
    for offset, change in enumerate(invoice_diff.changes):
        action = _LINE_ACTIONS[change.kind]
        unit_price = (change.modified or change.original).unit_price
        details = {
            "partId": change.part_id,
            "partName": change.part_name,
            "quantityBefore": change.quantity_before,
            "quantityAfter": change.quantity_after,
            "quantity": change.quantity_after or change.quantity_before,
            "stockImpact": change.stock_delta,
            "unitPrice": money_to_str(unit_price) if unit_price.is_finite() else str(unit_price),
            "quantityChanged": change.quantity_changed,
            "priceChanged": change.price_changed,
        }
        if change.kind == LineChangeKind.MODIFIED and change.price_changed:
            details["unitPriceBefore"] = money_to_str(change.original.unit_price)
        entries.append(
            AuditEntry(
                id=audit_entry_id(operation_id, start_index + offset),
                timestamp=timestamp,
                session_id=session_id,
                operation_id=operation_id,
                action=action.value,
                category=AuditCategory.INVOICE_EDITING.value,
                summary=summarize(action, details, invoice_number),
                invoice_id=invoice_id,
                invoice_number=invoice_number,
                details=details,
                metadata={"source": "stock_reconciliation"},
            )
        )
    return tuple(entries)


def analyze_edit(
    original_items: Invoice | Iterable[LineItem],
    new_items: Invoice | Iterable[LineItem],
    current_parts: Mapping[str, Part] | Iterable[Part],
) -> EditAnalysis:
    """Diff, impact, planned updates and missing parts in one call."""
    parts = index_parts(current_parts)
    invoice_diff = diff(original_items, new_items)
    impact = net_stock_impact(invoice_diff)
    return EditAnalysis(
        diff=invoice_diff,
        impact=impact,
        updates=generate_part_updates(impact, parts),
        missing_part_ids=missing_parts(impact, parts),
    )


def quantities_after(
    original: Mapping[str, int], impact: Mapping[str, int]
) -> dict[str, int]:
    """
    Per-part invoice quantities implied by applying ``impact`` to ``original``.

    Impact is measured from the stock side, so it is subtracted from the
    invoice quantities.  Parts that end at zero are dropped.
    """
    result = dict(original)
    for part_id, delta in impact.items():
        result[part_id] = result.get(part_id, 0) - delta
    return {part_id: qty for part_id, qty in sorted(result.items()) if qty != 0}


