"""Read-only selectors over the document store."""

from invoice_kernel.selectors.audit_selector import AuditSelector
from invoice_kernel.selectors.base import BaseSelector
from invoice_kernel.selectors.invoice_selector import InvoiceSelector
from invoice_kernel.selectors.quotation_selector import QuotationSelector, QuotationSummary

__all__ = [
    "AuditSelector",
    "BaseSelector",
    "InvoiceSelector",
    "QuotationSelector",
    "QuotationSummary",
]
