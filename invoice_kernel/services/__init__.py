"""Services for the invoice kernel (write side)."""

from invoice_kernel.services.atomic_mutator import (
    AtomicMutator,
    DeleteResult,
    EditResult,
    MutationPhase,
    MutationStatus,
)
from invoice_kernel.services.audit_recorder import AuditRecorder
from invoice_kernel.services.conflict_detector import (
    ConcurrentEditMonitor,
    ConflictCheck,
    ConflictDetector,
    ConflictReason,
)
from invoice_kernel.services.invoice_editor import (
    EditSession,
    InvoiceEditor,
    SessionEvent,
    SessionEventKind,
    SessionState,
)
from invoice_kernel.services.payment_service import PaymentResult, PaymentService

__all__ = [
    "AtomicMutator",
    "AuditRecorder",
    "ConcurrentEditMonitor",
    "ConflictCheck",
    "ConflictDetector",
    "ConflictReason",
    "DeleteResult",
    "EditResult",
    "EditSession",
    "InvoiceEditor",
    "MutationPhase",
    "MutationStatus",
    "PaymentResult",
    "PaymentService",
    "SessionEvent",
    "SessionEventKind",
    "SessionState",
]
