"""
PaymentService -- records a customer payment against an invoice.

Responsibility:
    Writes the payment transaction, marks the customer invoice paid and
    appends the ``payment_recorded`` audit entry, all in one batch.

Architecture position:
    Kernel > Services -- imperative shell, same batch discipline as
    ``AtomicMutator``.

Invariants enforced:
    - The transaction insert and the invoice status update commit together
      or not at all.
    - ``transactions`` is append-only; a payment is never edited in place.

Failure modes:
    - ``ValueError`` for a non-positive or non-finite amount.
    - ``DocumentNotFoundError`` when the customer invoice does not exist.
    - ``StoreError`` subclasses from the commit, after a best-effort error
      audit entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.domain.identifiers import new_operation_id, new_transaction_number
from invoice_kernel.domain.money import money_to_str, round_money, to_decimal
from invoice_kernel.exceptions import DocumentError, DocumentNotFoundError, StoreError
from invoice_kernel.logging_config import LogContext, get_logger
from invoice_kernel.models.document import Collection
from invoice_kernel.services.audit_recorder import AuditRecorder
from invoice_kernel.store.base import DocumentStore

logger = get_logger("services.payment")

PAID = "paid"


@dataclass(frozen=True)
class PaymentResult:
    transaction_id: str
    invoice_id: str
    amount: Decimal
    method: str
    paid_at: datetime
    operation_id: str
    audit_entry_id: str


class PaymentService:
    """
    Records payments for customer invoices.

    Non-goals:
        - No refunds or partial-payment ledger; a payment sets the invoice
          to ``paid`` with the amount received.
    """

    def __init__(self, store: DocumentStore, audit: AuditRecorder, clock: Clock | None = None):
        self._store = store
        self._audit = audit
        self._clock = clock or SystemClock()

    def record_payment(
        self,
        invoice_id: str,
        amount: Any,
        method: str,
        reference: str | None = None,
        notes: str | None = None,
    ) -> PaymentResult:
        value = to_decimal(amount)
        if not value.is_finite() or value <= 0:
            raise ValueError(f"Payment amount must be greater than 0, got {amount!r}")
        value = round_money(value)

        operation_id = new_operation_id(self._clock)
        with LogContext.bind(
            operation_id=operation_id,
            session_id=self._audit.session_id,
            invoice_id=invoice_id,
        ):
            document = self._store.get(Collection.CUSTOMER_INVOICES, invoice_id)
            if document is None:
                raise DocumentNotFoundError(Collection.CUSTOMER_INVOICES.value, invoice_id)

            now = self._clock.now()
            transaction_id = new_transaction_number(self._clock)
            invoice_number = document.get("invoiceNumber")
            customer = document.get("customer") or document.get("customerInfo") or {}

            entry = self._audit.record_payment(
                invoice_id,
                invoice_number,
                transaction_id,
                value,
                method,
                operation_id=operation_id,
            )
            batch = self._store.batch()
            batch.set(
                Collection.TRANSACTIONS,
                transaction_id,
                {
                    "transactionNumber": transaction_id,
                    "invoiceId": invoice_id,
                    "invoiceNumber": invoice_number,
                    "customerId": document.get("customerId"),
                    "customerName": document.get("customerName") or customer.get("name"),
                    "amount": money_to_str(value),
                    "paymentMethod": method,
                    "referenceNumber": reference or "",
                    "notes": notes or "",
                    "paymentDate": now.isoformat(),
                    "status": "completed",
                    "operationId": operation_id,
                },
            )
            batch.update(
                Collection.CUSTOMER_INVOICES,
                invoice_id,
                {
                    "paymentStatus": PAID,
                    "paidAmount": money_to_str(value),
                    "paidDate": now.isoformat(),
                },
            )
            self._audit.stage(batch, [entry])
            try:
                batch.commit()
            except (StoreError, DocumentError) as error:
                logger.error(
                    "payment_record_failed",
                    extra={"error_code": getattr(error, "code", None)},
                )
                self._audit.append_best_effort(
                    self._audit.record_error(
                        "record_payment",
                        error,
                        {
                            "invoiceId": invoice_id,
                            "invoiceNumber": invoice_number,
                            "amount": money_to_str(value),
                            "severity": "high",
                            "recoveryAction": "retry",
                        },
                        operation_id=operation_id,
                    )
                )
                raise

            logger.info(
                "payment_recorded",
                extra={
                    "transaction_id": transaction_id,
                    "amount": money_to_str(value),
                    "payment_method": method,
                },
            )
            return PaymentResult(
                transaction_id=transaction_id,
                invoice_id=invoice_id,
                amount=value,
                method=method,
                paid_at=now,
                operation_id=operation_id,
                audit_entry_id=entry.id,
            )
