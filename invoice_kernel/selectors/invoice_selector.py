"""Read access to invoices and the parts they reference."""

from collections.abc import Iterable

from invoice_kernel.domain.invoice import Invoice, Part
from invoice_kernel.models.document import Collection
from invoice_kernel.selectors.base import BaseSelector


class InvoiceSelector(BaseSelector):
    """Loads invoices and part snapshots as domain values."""

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        document = self.store.get(Collection.INVOICES, invoice_id)
        if document is None:
            return None
        return Invoice.from_document(document.id, document.data)

    def get_customer_invoice(self, invoice_id: str) -> Invoice | None:
        document = self.store.get(Collection.CUSTOMER_INVOICES, invoice_id)
        if document is None:
            return None
        return Invoice.from_document(document.id, document.data)

    def get_part(self, part_id: str) -> Part | None:
        document = self.store.get(Collection.PARTS, part_id)
        if document is None:
            return None
        return Part.from_document(document.id, document.data)

    def parts_by_ids(self, part_ids: Iterable[str]) -> dict[str, Part]:
        """Parts that exist, keyed by id.  Missing ids are simply absent."""
        parts = {}
        for part_id in sorted(set(part_ids)):
            part = self.get_part(part_id)
            if part is not None:
                parts[part_id] = part
        return parts

    def parts_for_invoice(self, *invoices: Invoice) -> dict[str, Part]:
        """Current parts snapshot for every part any of ``invoices`` references."""
        return self.parts_by_ids(
            item.part_id for invoice in invoices for item in invoice.items
        )
