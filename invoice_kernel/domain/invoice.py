"""
Invoice domain values (``invoice_kernel.domain.invoice``).

Responsibility
--------------
Frozen value objects for invoices, their line items, the parts they
consume, and the stock/audit records produced when an invoice changes.
Each type converts to and from the camelCase document layout used by the
shared store.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``store/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* ``LineItem.of`` always derives ``line_total`` from quantity and unit
  price with half-even rounding.
* Documents missing ``version`` read as version 1; missing ``editCount``
  reads as 0.
* Nothing here validates business rules; that is the edit validator's job.
  Values that would fail validation (zero quantity, negative price) are
  representable so that the validator can report them.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from invoice_kernel.domain.money import (
    MONEY_DECIMAL_PLACES,
    ZERO,
    is_valid_amount,
    line_total,
    money_to_str,
    round_money,
    to_decimal,
)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _ts_to_doc(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _ts_from_doc(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _amount_to_doc(value: Decimal) -> str:
    # Non-finite amounts are kept verbatim so the validator can report them.
    return str(value)


def _first(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _amount_from_doc(value: Any) -> Decimal:
    # Unreadable amounts become NaN so the validator reports INVALID_PRICE.
    return to_decimal(value) if is_valid_amount(value) else Decimal("NaN")


def _quantity_from_doc(value: Any) -> Any:
    """Whole-number quantities as int; other numbers kept for the validator."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    try:
        number = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return 0
    if not number.is_finite():
        return 0
    if number == number.to_integral_value():
        return int(number)
    return float(number)


# ---------------------------------------------------------------------------
# Customer / line items
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Customer:
    """Customer block embedded in an invoice."""

    name: str
    contact: str = ""
    address: str | None = None

    FIELDS = ("name", "contact", "address")

    def to_document(self) -> dict[str, Any]:
        return {"name": self.name, "contact": self.contact, "address": self.address}

    @classmethod
    def from_document(cls, data: Mapping[str, Any] | None) -> Customer:
        data = data or {}
        return cls(
            name=data.get("name") or "",
            contact=data.get("contact") or data.get("phone") or "",
            address=data.get("address"),
        )


@dataclass(frozen=True)
class LineItem:
    """One quantity-priced reference to a part inside an invoice."""

    part_id: str
    part_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    @classmethod
    def of(
        cls,
        part_id: str,
        part_name: str,
        quantity: int,
        unit_price: Any,
        decimal_places: int = MONEY_DECIMAL_PLACES,
    ) -> LineItem:
        """Build a line with ``line_total`` computed from quantity and price."""
        price = to_decimal(unit_price)
        total = line_total(quantity, price, decimal_places) if price.is_finite() else price
        return cls(
            part_id=part_id,
            part_name=part_name,
            quantity=quantity,
            unit_price=price,
            line_total=total,
        )

    def with_quantity(self, quantity: int) -> LineItem:
        return LineItem.of(self.part_id, self.part_name, quantity, self.unit_price)

    def with_unit_price(self, unit_price: Any) -> LineItem:
        return LineItem.of(self.part_id, self.part_name, self.quantity, unit_price)

    def to_document(self) -> dict[str, Any]:
        return {
            "partId": self.part_id,
            "partName": self.part_name,
            "quantity": self.quantity,
            "unitPrice": _amount_to_doc(self.unit_price),
            "lineTotal": _amount_to_doc(self.line_total),
        }

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> LineItem:
        price = _amount_from_doc(_first(data, "unitPrice", "finalPrice", default="0"))
        quantity = _quantity_from_doc(data.get("quantity"))
        stored_total = _first(data, "lineTotal", "totalPrice")
        if stored_total is not None:
            total = _amount_from_doc(stored_total)
        elif price.is_finite() and isinstance(quantity, int):
            total = line_total(quantity, price)
        else:
            total = Decimal("NaN")
        return cls(
            part_id=str(data["partId"]),
            part_name=_first(data, "partName", "namaProduk", default=""),
            quantity=quantity,
            unit_price=price,
            line_total=total,
        )


# ---------------------------------------------------------------------------
# Invoice
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EditStamp:
    """``lastEditSession`` marker written on every committed edit."""

    operation_id: str
    session_id: str
    timestamp: datetime
    edit_type: str = "advanced_edit"

    def to_document(self) -> dict[str, Any]:
        return {
            "operationId": self.operation_id,
            "sessionId": self.session_id,
            "timestamp": _ts_to_doc(self.timestamp),
            "editType": self.edit_type,
        }

    @classmethod
    def from_document(cls, data: Mapping[str, Any] | None) -> EditStamp | None:
        if not data:
            return None
        return cls(
            operation_id=data.get("operationId", ""),
            session_id=data.get("sessionId", ""),
            timestamp=_ts_from_doc(data.get("timestamp")),
            edit_type=data.get("editType", "advanced_edit"),
        )


_PATCHABLE_FIELDS = frozenset({"customer", "items", "notes", "total_amount"})


@dataclass(frozen=True)
class Invoice:
    """
    Persisted record of a sale.

    Contract: frozen; every change produces a new Invoice via
    ``apply_patch`` / ``with_items`` / ``dataclasses.replace``.
    """

    id: str
    number: str
    customer: Customer
    items: tuple[LineItem, ...]
    total_amount: Decimal
    notes: str | None = None
    version: int = 1
    edit_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_edited_at: datetime | None = None
    last_edit_session: EditStamp | None = None
    payment_status: str | None = None

    @property
    def items_total(self) -> Decimal:
        """Sum of line totals (no rounding beyond each line's own)."""
        total = ZERO
        for item in self.items:
            if item.line_total.is_finite():
                total += item.line_total
        return total

    def quantities_by_part(self) -> dict[str, int]:
        """Total quantity per part id (duplicate lines are summed)."""
        quantities: dict[str, int] = {}
        for item in self.items:
            quantities[item.part_id] = quantities.get(item.part_id, 0) + item.quantity
        return quantities

    def with_items(self, items: Iterable[LineItem], recalculate_total: bool = True) -> Invoice:
        new_items = tuple(items)
        if not recalculate_total:
            return replace(self, items=new_items)
        total = ZERO
        for item in new_items:
            if item.line_total.is_finite():
                total += item.line_total
        return replace(self, items=new_items, total_amount=round_money(total))

    def apply_patch(self, patch: Mapping[str, Any]) -> Invoice:
        """
        Apply a caller patch of editable fields.

        Accepts ``customer`` (Customer or mapping), ``items`` (LineItems or
        item mappings), ``notes`` and ``total_amount``.  When ``items``
        changes without an explicit ``total_amount`` the total is
        recalculated from the new lines.

        Raises:
            ValueError: on keys that are not editable.
        """
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")

        updated = self
        if "customer" in patch:
            customer = patch["customer"]
            if not isinstance(customer, Customer):
                customer = Customer.from_document(customer)
            updated = replace(updated, customer=customer)
        if "items" in patch:
            items = [
                item if isinstance(item, LineItem) else LineItem.from_document(item)
                for item in patch["items"]
            ]
            updated = updated.with_items(items, recalculate_total="total_amount" not in patch)
        if "notes" in patch:
            updated = replace(updated, notes=patch["notes"])
        if "total_amount" in patch:
            updated = replace(updated, total_amount=_amount_from_doc(patch["total_amount"]))
        return updated

    def content_document(self) -> dict[str, Any]:
        """Caller-editable content only (no version/timestamp metadata)."""
        return {
            "invoiceNumber": self.number,
            "customer": self.customer.to_document(),
            "items": [item.to_document() for item in self.items],
            "totalAmount": _amount_to_doc(self.total_amount),
            "notes": self.notes,
        }

    def to_document(self) -> dict[str, Any]:
        doc = self.content_document()
        doc.update(
            {
                "version": self.version,
                "editCount": self.edit_count,
                "createdAt": _ts_to_doc(self.created_at),
                "updatedAt": _ts_to_doc(self.updated_at),
                "lastEditedAt": _ts_to_doc(self.last_edited_at),
                "lastEditSession": (
                    self.last_edit_session.to_document()
                    if self.last_edit_session is not None
                    else None
                ),
            }
        )
        if self.payment_status is not None:
            doc["paymentStatus"] = self.payment_status
        return doc

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> Invoice:
        items = tuple(LineItem.from_document(item) for item in data.get("items") or ())
        return cls(
            id=doc_id,
            number=_first(data, "invoiceNumber", "number", default=""),
            customer=Customer.from_document(_first(data, "customer", "customerInfo")),
            items=items,
            total_amount=_amount_from_doc(data.get("totalAmount", "0")),
            notes=data.get("notes"),
            version=int(data.get("version") or 1),
            edit_count=int(data.get("editCount") or 0),
            created_at=_ts_from_doc(data.get("createdAt")),
            updated_at=_ts_from_doc(data.get("updatedAt")),
            last_edited_at=_ts_from_doc(data.get("lastEditedAt")),
            last_edit_session=EditStamp.from_document(data.get("lastEditSession")),
            payment_status=data.get("paymentStatus"),
        )


# ---------------------------------------------------------------------------
# Parts and stock
# ---------------------------------------------------------------------------


class StockReason(str, Enum):
    """Direction of one part's stock movement."""

    ALLOCATE = "allocate"
    RESTORE = "restore"


class StockChangeCause(str, Enum):
    """Why a part's ``lastStockChange`` was written."""

    INVOICE_EDIT = "invoice_edit"
    INVOICE_DELETION = "invoice_deletion"


@dataclass(frozen=True)
class PartStockStamp:
    """``lastStockChange`` marker on a part document."""

    reason: str
    invoice_id: str
    delta: int
    timestamp: datetime
    operation_id: str

    def to_document(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "invoiceId": self.invoice_id,
            "delta": self.delta,
            "timestamp": _ts_to_doc(self.timestamp),
            "operationId": self.operation_id,
        }

    @classmethod
    def from_document(cls, data: Mapping[str, Any] | None) -> PartStockStamp | None:
        if not data:
            return None
        return cls(
            reason=data.get("reason", ""),
            invoice_id=data.get("invoiceId", ""),
            delta=int(_first(data, "delta", "change", default=0)),
            timestamp=_ts_from_doc(data.get("timestamp")),
            operation_id=data.get("operationId", ""),
        )


@dataclass(frozen=True)
class Part:
    """Inventoried item with a stock count."""

    id: str
    name: str
    code: str
    unit_stock: int
    unit_price: Decimal = ZERO
    updated_at: datetime | None = None
    last_stock_change: PartStockStamp | None = None

    def to_document(self) -> dict[str, Any]:
        doc = {
            "name": self.name,
            "code": self.code,
            "unitStock": self.unit_stock,
            "unitPrice": _amount_to_doc(self.unit_price),
            "updatedAt": _ts_to_doc(self.updated_at),
        }
        if self.last_stock_change is not None:
            doc["lastStockChange"] = self.last_stock_change.to_document()
        return doc

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> Part:
        return cls(
            id=doc_id,
            name=_first(data, "name", "namaProduk", default=""),
            code=_first(data, "code", "kodeProduk", default=""),
            unit_stock=int(data.get("unitStock") or 0),
            unit_price=to_decimal(_first(data, "unitPrice", "harga", default="0")),
            updated_at=_ts_from_doc(data.get("updatedAt")),
            last_stock_change=PartStockStamp.from_document(data.get("lastStockChange")),
        )


@dataclass(frozen=True)
class StockUpdate:
    """Planned write of one part's new stock level."""

    part_id: str
    part_name: str
    before: int
    after: int
    delta: int


@dataclass(frozen=True)
class StockChange:
    """Committed stock movement, as reported to callers and the audit trail."""

    part_id: str
    part_name: str
    quantity_before: int
    quantity_after: int
    delta: int
    reason: StockReason
    operation_id: str
    timestamp: datetime

    @classmethod
    def from_update(cls, update: StockUpdate, operation_id: str, timestamp: datetime) -> StockChange:
        return cls(
            part_id=update.part_id,
            part_name=update.part_name,
            quantity_before=update.before,
            quantity_after=update.after,
            delta=update.delta,
            reason=StockReason.RESTORE if update.delta > 0 else StockReason.ALLOCATE,
            operation_id=operation_id,
            timestamp=timestamp,
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "partId": self.part_id,
            "partName": self.part_name,
            "quantityBefore": self.quantity_before,
            "quantityAfter": self.quantity_after,
            "delta": self.delta,
            "reason": self.reason.value,
            "operationId": self.operation_id,
            "timestamp": _ts_to_doc(self.timestamp),
        }

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> StockChange:
        return cls(
            part_id=data["partId"],
            part_name=data.get("partName", ""),
            quantity_before=int(data.get("quantityBefore", 0)),
            quantity_after=int(data.get("quantityAfter", 0)),
            delta=int(data.get("delta", 0)),
            reason=StockReason(data.get("reason", StockReason.ALLOCATE.value)),
            operation_id=data.get("operationId", ""),
            timestamp=_ts_from_doc(data.get("timestamp")),
        )


# ---------------------------------------------------------------------------
# Audit entries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEntry:
    """
    Immutable record describing one lifecycle event.

    Contract: append-only.  The store rejects updates and deletes on the
    ``audit_trail`` collection.
    """

    id: str
    timestamp: datetime
    session_id: str
    operation_id: str
    action: str
    category: str
    summary: str
    invoice_id: str | None = None
    invoice_number: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    stock_changes: tuple[StockChange, ...] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _ts_to_doc(self.timestamp),
            "sessionId": self.session_id,
            "operationId": self.operation_id,
            "action": self.action,
            "category": self.category,
            "summary": self.summary,
            "invoiceId": self.invoice_id,
            "invoiceNumber": self.invoice_number,
            "details": dict(self.details),
            "stockChanges": (
                [change.to_document() for change in self.stock_changes]
                if self.stock_changes is not None
                else None
            ),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> AuditEntry:
        changes = data.get("stockChanges")
        return cls(
            id=data.get("id", doc_id),
            timestamp=_ts_from_doc(data.get("timestamp")),
            session_id=data.get("sessionId", ""),
            operation_id=data.get("operationId", ""),
            action=data.get("action", ""),
            category=data.get("category", ""),
            summary=data.get("summary", ""),
            invoice_id=data.get("invoiceId"),
            invoice_number=data.get("invoiceNumber"),
            details=data.get("details") or {},
            stock_changes=(
                tuple(StockChange.from_document(c) for c in changes)
                if changes is not None
                else None
            ),
            metadata=data.get("metadata") or {},
        )


def money_field(value: Decimal) -> str:
    """Money as it appears inside audit details."""
    if not value.is_finite():
        return str(value)
    return money_to_str(value)
