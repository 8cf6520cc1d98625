"""Read-only access to quotations.  The edit core never writes them."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from invoice_kernel.domain.invoice import Customer
from invoice_kernel.domain.money import to_decimal
from invoice_kernel.models.document import Collection
from invoice_kernel.selectors.base import BaseSelector
from invoice_kernel.store.base import Document


@dataclass(frozen=True)
class QuotationSummary:
    id: str
    number: str
    customer: Customer
    total_amount: Decimal
    status: str
    created_at: datetime | None

    @classmethod
    def from_document(cls, document: Document) -> "QuotationSummary":
        data = document.data
        created = data.get("dateCreated") or data.get("createdAt")
        return cls(
            id=document.id,
            number=data.get("quotationNumber", ""),
            customer=Customer.from_document(data.get("customer") or data.get("customerInfo")),
            total_amount=to_decimal(data.get("totalAmount", data.get("total", "0"))),
            status=data.get("status") or "pending",
            created_at=datetime.fromisoformat(created) if isinstance(created, str) else created,
        )


class QuotationSelector(BaseSelector):
    def get_quotation(self, quotation_id: str) -> QuotationSummary | None:
        document = self.store.get(Collection.QUOTATIONS, quotation_id)
        return QuotationSummary.from_document(document) if document is not None else None

    def list_quotations(
        self, status: str | None = None, limit: int | None = None
    ) -> list[QuotationSummary]:
        where: dict[str, Any] = {"status": status} if status is not None else {}
        documents = self.store.query(
            Collection.QUOTATIONS,
            where=where,
            order_by="dateCreated",
            descending=True,
            limit=limit,
        )
        return [QuotationSummary.from_document(doc) for doc in documents]
