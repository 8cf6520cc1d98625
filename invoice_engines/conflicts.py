"""
invoice_engines.conflicts -- Field-level conflict classification and resolution.

Responsibility:
    Given the caller's local invoice, the live remote invoice and optionally
    the snapshot both started from, list every editable field that differs
    and who changed it.  Apply the resolution strategy the caller picks.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    The I/O half (reading the live invoice) is
    ``invoice_kernel.services.conflict_detector``.

Invariants enforced:
    - Fields are compared in a fixed order: customer name, contact, address,
      each item by part id ascending, notes, total amount.
    - Items are compared by part id; unit prices within half a minor unit
      are equal.
    - ``merge`` never loses a remote-only change and always recomputes the
      total from the merged lines.

Failure modes:
    - ``UnknownResolutionStrategyError`` for an unrecognised strategy name.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any

from invoice_engines.reconciliation import fold_items
from invoice_engines.tracer import traced_engine
from invoice_kernel.domain.invoice import Customer, Invoice, LineItem
from invoice_kernel.domain.money import prices_equal, round_money
from invoice_kernel.exceptions import UnknownResolutionStrategyError
from invoice_kernel.logging_config import get_logger

logger = get_logger("engines.conflicts")


class ConflictKind(str, Enum):
    LOCAL_ONLY = "local_only"
    REMOTE_ONLY = "remote_only"
    BOTH_CHANGED = "both_changed"


class ResolutionStrategy(str, Enum):
    ABORT = "abort"
    DISCARD_LOCAL_RELOAD_REMOTE = "discard_local_reload_remote"
    FORCE_OVERWRITE = "force_overwrite"
    MERGE = "merge"

    @classmethod
    def parse(cls, value: str | ResolutionStrategy) -> ResolutionStrategy:
        try:
            return cls(value)
        except ValueError:
            raise UnknownResolutionStrategyError(str(value)) from None


@dataclass(frozen=True)
class FieldConflict:
    """One field that differs between the local and remote invoice."""

    field: str
    kind: ConflictKind
    local: Any
    remote: Any
    base: Any = None
    part_id: str | None = None

    @property
    def message(self) -> str:
        if self.kind == ConflictKind.REMOTE_ONLY:
            return f"{self.field} was changed by another user"
        if self.kind == ConflictKind.LOCAL_ONLY:
            return f"{self.field} was changed in this session"
        return f"{self.field} was changed both here and by another user"

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "kind": self.kind.value,
            "local": _display(self.local),
            "remote": _display(self.remote),
            "partId": self.part_id,
        }


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------

_ABSENT = None


def _item_field(part_id: str) -> str:
    return f"items[{part_id}]"


def _display(value: Any) -> Any:
    if isinstance(value, LineItem):
        return {"quantity": value.quantity, "unitPrice": str(value.unit_price)}
    if isinstance(value, Decimal):
        return str(value)
    return value


def _fields_of(invoice: Invoice) -> dict[str, Any]:
    values: dict[str, Any] = {
        f"customer.{name}": getattr(invoice.customer, name) for name in Customer.FIELDS
    }
    for part_id, item in fold_items(invoice.items).items():
        values[_item_field(part_id)] = item
    values["notes"] = invoice.notes
    values["totalAmount"] = invoice.total_amount
    return values


def _ordered_fields(*invoices: Invoice | None) -> list[str]:
    item_ids: set[str] = set()
    for invoice in invoices:
        if invoice is not None:
            item_ids.update(item.part_id for item in invoice.items)
    return (
        [f"customer.{name}" for name in Customer.FIELDS]
        + [_item_field(part_id) for part_id in sorted(item_ids)]
        + ["notes", "totalAmount"]
    )


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, LineItem) and isinstance(b, LineItem):
        return a.quantity == b.quantity and prices_equal(a.unit_price, b.unit_price)
    if isinstance(a, Decimal) and isinstance(b, Decimal):
        if a.is_finite() and b.is_finite():
            return round_money(a) == round_money(b)
        return False
    if a in (None, "") and b in (None, ""):
        return True
    return a == b


def _part_id_of(field: str) -> str | None:
    if field.startswith("items[") and field.endswith("]"):
        return field[len("items["):-1]
    return None


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


@traced_engine("conflicts", "1.0", fingerprint_fields=("local", "remote", "base"))
def detect_field_conflicts(
    local: Invoice,
    remote: Invoice,
    base: Invoice | None = None,
) -> tuple[FieldConflict, ...]:
    """
    Classify every differing field.

    With ``base`` a field is ``local_only`` / ``remote_only`` when only one
    side moved away from the base, ``both_changed`` when both moved to
    different values.  Without ``base`` an item present on one side only is
    attributed to that side and any other difference is ``both_changed``.
    """
    local_values = _fields_of(local)
    remote_values = _fields_of(remote)
    base_values = _fields_of(base) if base is not None else None

    conflicts: list[FieldConflict] = []
    for field in _ordered_fields(local, remote, base):
        lv = local_values.get(field, _ABSENT)
        rv = remote_values.get(field, _ABSENT)
        part_id = _part_id_of(field)

        if base_values is not None:
            bv = base_values.get(field, _ABSENT)
            local_changed = not _same(lv, bv)
            remote_changed = not _same(rv, bv)
            if local_changed and remote_changed:
                if _same(lv, rv):
                    continue
                kind = ConflictKind.BOTH_CHANGED
            elif local_changed:
                kind = ConflictKind.LOCAL_ONLY
            elif remote_changed:
                kind = ConflictKind.REMOTE_ONLY
            else:
                continue
            conflicts.append(FieldConflict(field, kind, lv, rv, bv, part_id))
            continue

        if _same(lv, rv):
            continue
        if part_id is not None and rv is _ABSENT:
            kind = ConflictKind.LOCAL_ONLY
        elif part_id is not None and lv is _ABSENT:
            kind = ConflictKind.REMOTE_ONLY
        else:
            kind = ConflictKind.BOTH_CHANGED
        conflicts.append(FieldConflict(field, kind, lv, rv, None, part_id))

    return tuple(conflicts)


def available_strategies(conflicts: tuple[FieldConflict, ...]) -> tuple[ResolutionStrategy, ...]:
    """
    Strategies the caller may choose, most recommended first.

    Merge leads when no field was changed on both sides; otherwise reloading
    the remote version is safer.
    """
    if any(conflict.kind == ConflictKind.BOTH_CHANGED for conflict in conflicts):
        return (
            ResolutionStrategy.DISCARD_LOCAL_RELOAD_REMOTE,
            ResolutionStrategy.MERGE,
            ResolutionStrategy.FORCE_OVERWRITE,
            ResolutionStrategy.ABORT,
        )
    return (
        ResolutionStrategy.MERGE,
        ResolutionStrategy.DISCARD_LOCAL_RELOAD_REMOTE,
        ResolutionStrategy.FORCE_OVERWRITE,
        ResolutionStrategy.ABORT,
    )


def _with_content_of(target: Invoice, source: Invoice) -> Invoice:
    """``target``'s identity and version metadata with ``source``'s content."""
    return replace(
        target,
        customer=source.customer,
        items=source.items,
        notes=source.notes,
        total_amount=source.total_amount,
    )


def merge(local: Invoice, remote: Invoice, base: Invoice | None = None) -> Invoice:
    """
    Remote invoice with local changes applied.

    Remote-only changes are kept; local-only and both-changed fields take
    the local value.  The total is recomputed from the merged lines.
    """
    take_local = {
        conflict.field
        for conflict in detect_field_conflicts(local, remote, base)
        if conflict.kind != ConflictKind.REMOTE_ONLY
    }
    local_values = _fields_of(local)
    remote_values = _fields_of(remote)

    def pick(field: str) -> Any:
        source = local_values if field in take_local else remote_values
        return source.get(field, _ABSENT)

    customer = Customer(
        name=pick("customer.name") or "",
        contact=pick("customer.contact") or "",
        address=pick("customer.address"),
    )
    items = []
    for field in _ordered_fields(local, remote):
        if _part_id_of(field) is None:
            continue
        item = pick(field)
        if item is not _ABSENT:
            items.append(item)

    merged = replace(remote, customer=customer, notes=pick("notes"))
    return merged.with_items(items, recalculate_total=True)


def resolve(
    strategy: str | ResolutionStrategy,
    local: Invoice,
    remote: Invoice,
    base: Invoice | None = None,
) -> Invoice | None:
    """
    Apply a resolution strategy.

    Returns:
        None for ``abort``; otherwise the invoice to continue editing, always
        carrying the remote version metadata so the next save is checked
        against the live version.
    """
    chosen = ResolutionStrategy.parse(strategy)
    logger.info(
        "conflict_resolution_applied",
        extra={"strategy": chosen.value, "invoice_id": remote.id},
    )
    if chosen == ResolutionStrategy.ABORT:
        return None
    if chosen == ResolutionStrategy.DISCARD_LOCAL_RELOAD_REMOTE:
        return remote
    if chosen == ResolutionStrategy.FORCE_OVERWRITE:
        return _with_content_of(remote, local)
    return merge(local, remote, base)
