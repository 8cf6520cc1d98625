"""Tests for invoice domain values and their document layout."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from invoice_kernel.domain.invoice import (
    AuditEntry,
    Customer,
    EditStamp,
    Invoice,
    LineItem,
    Part,
    StockChange,
    StockReason,
    StockUpdate,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _invoice(**overrides):
    items = (LineItem.of("P1", "Brake pad", 2, "5.00"),)
    values = dict(
        id="inv-1",
        number="INV-1",
        customer=Customer("Ahmad Motors", "012-3456789"),
        items=items,
        total_amount=Decimal("10.00"),
    )
    values.update(overrides)
    return Invoice(**values)


class TestLineItem:
    def test_of_computes_line_total(self):
        item = LineItem.of("P1", "Brake pad", 3, "7.00")
        assert item.line_total == Decimal("21.00")

    def test_with_quantity_recomputes_total(self):
        item = LineItem.of("P1", "Brake pad", 2, "5.00").with_quantity(5)
        assert item.quantity == 5
        assert item.line_total == Decimal("25.00")

    def test_legacy_field_names(self):
        item = LineItem.from_document(
            {"partId": "P9", "namaProduk": "Oil filter", "quantity": 2, "finalPrice": 12.5}
        )
        assert item.part_name == "Oil filter"
        assert item.unit_price == Decimal("12.5")
        assert item.line_total == Decimal("25.00")

    @pytest.mark.parametrize("stored, expected", [("2", 2), ("3.0", 3), (4.0, 4), (None, 0), ("two", 0), ("1.5", 1.5)])
    def test_legacy_quantities_coerced(self, stored, expected):
        item = LineItem.from_document({"partId": "P1", "quantity": stored, "unitPrice": "5.00"})
        assert item.quantity == expected
        assert type(item.quantity) is type(expected)

    def test_string_quantity_computes_line_total(self):
        item = LineItem.from_document({"partId": "P1", "quantity": "2", "unitPrice": "5.00"})
        assert item.line_total == Decimal("10.00")

    @pytest.mark.parametrize("price", ["abc", "", "Infinity", True])
    def test_unreadable_price_becomes_nan(self, price):
        item = LineItem.from_document({"partId": "P1", "quantity": 2, "unitPrice": price})
        assert item.unit_price.is_nan()
        assert item.line_total.is_nan()


class TestInvoiceDocument:
    def test_missing_version_reads_as_one(self):
        invoice = Invoice.from_document(
            "inv-1",
            {"invoiceNumber": "INV-1", "customer": {"name": "A"}, "items": [], "totalAmount": "0"},
        )
        assert invoice.version == 1
        assert invoice.edit_count == 0

    def test_document_round_trip_keeps_edit_stamp(self):
        stamp = EditStamp("op_1_abc", "session_1_abc", NOW)
        invoice = _invoice(version=3, edit_count=2, last_edit_session=stamp, updated_at=NOW)
        restored = Invoice.from_document("inv-1", invoice.to_document())
        assert restored == invoice

    def test_document_uses_camel_case(self):
        doc = _invoice().to_document()
        assert doc["invoiceNumber"] == "INV-1"
        assert doc["totalAmount"] == "10.00"
        assert doc["items"][0]["unitPrice"] == "5.00"
        assert "editCount" in doc

    def test_customer_info_alias(self):
        invoice = Invoice.from_document(
            "inv-1", {"customerInfo": {"name": "Lim", "phone": "019"}, "items": []}
        )
        assert invoice.customer == Customer("Lim", "019")


class TestApplyPatch:
    def test_items_patch_recalculates_total(self):
        invoice = _invoice().apply_patch(
            {"items": [LineItem.of("P1", "Brake pad", 5, "5.00")]}
        )
        assert invoice.total_amount == Decimal("25.00")

    def test_explicit_total_is_kept(self):
        invoice = _invoice().apply_patch(
            {"items": [LineItem.of("P1", "Brake pad", 5, "5.00")], "total_amount": "99.00"}
        )
        assert invoice.total_amount == Decimal("99.00")

    def test_item_mappings_accepted(self):
        invoice = _invoice().apply_patch(
            {"items": [{"partId": "P2", "partName": "Bulb", "quantity": 3, "unitPrice": "7.00"}]}
        )
        assert invoice.items[0].line_total == Decimal("21.00")
        assert invoice.total_amount == Decimal("21.00")

    def test_customer_mapping_accepted(self):
        invoice = _invoice().apply_patch({"customer": {"name": "New", "contact": "1"}})
        assert invoice.customer.name == "New"

    def test_unreadable_total_becomes_nan(self):
        invoice = _invoice().apply_patch({"total_amount": "ten"})
        assert invoice.total_amount.is_nan()

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            _invoice().apply_patch({"version": 9})

    def test_original_unchanged(self):
        original = _invoice()
        original.apply_patch({"notes": "changed"})
        assert original.notes is None


class TestStockValues:
    def test_positive_delta_is_restore(self):
        change = StockChange.from_update(StockUpdate("P1", "Pad", 7, 10, 3), "op", NOW)
        assert change.reason == StockReason.RESTORE

    def test_negative_delta_is_allocate(self):
        change = StockChange.from_update(StockUpdate("P1", "Pad", 10, 7, -3), "op", NOW)
        assert change.reason == StockReason.ALLOCATE

    def test_part_legacy_fields(self):
        part = Part.from_document("P1", {"namaProduk": "Pad", "kodeProduk": "BP-1", "unitStock": 4})
        assert (part.name, part.code, part.unit_stock) == ("Pad", "BP-1", 4)


class TestAuditEntryDocument:
    def test_round_trip(self):
        change = StockChange.from_update(StockUpdate("P1", "Pad", 10, 7, -3), "op", NOW)
        entry = AuditEntry(
            id="audit_op_000",
            timestamp=NOW,
            session_id="s",
            operation_id="op",
            action="invoice_edit_completed",
            category="invoice_editing",
            summary="Updated invoice INV-1 - 1 changes made",
            invoice_id="inv-1",
            invoice_number="INV-1",
            details={"newVersion": 2},
            stock_changes=(change,),
        )
        assert AuditEntry.from_document(entry.id, entry.to_document()) == entry
