"""
Typed Exception Hierarchy for the Invoice Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the edit core (the invoice edit screen, the deletion flow, the
payment form) must react differently to a store outage, a concurrent edit
and a broken invariant.  Parsing message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, UI-safe)
  3. Exceptions carry structured DATA (not just a message string)

Validation failures and edit conflicts are NOT exceptions.  They are
returned as result values (see ``invoice_engines.validation`` and
``invoice_kernel.services.atomic_mutator``) so the UI can render them.
The classes below cover what is left: store failures, broken invariants,
session misuse and append-only violations.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    InvoiceKernelError (base)
    |
    +-- DocumentError
    |   +-- DocumentNotFoundError
    |   +-- DocumentAlreadyExistsError
    |
    +-- StoreError
    |   +-- StoreUnavailableError
    |   +-- StorePermissionError
    |   +-- StoreUnknownError
    |
    +-- ConcurrencyError
    |   +-- VersionConflictError
    |   +-- PreconditionFailedError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- InvariantViolationError
    |
    +-- SessionError
    |   +-- NoActiveSessionError
    |   +-- SessionAlreadyActiveError
    |   +-- SessionStateError
    |
    +-- ResolutionError
        +-- UnknownResolutionStrategyError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Document        | DOCUMENT_NOT_FOUND          | update/require on a missing document
                | DOCUMENT_ALREADY_EXISTS     | append to an append-only id twice
----------------|-----------------------------|-----------------------------------------
Store           | UNAVAILABLE                 | backend unreachable / timed out
                | PERMISSION_DENIED           | backend refused the operation
                | UNKNOWN                     | any other backend failure
----------------|-----------------------------|-----------------------------------------
Concurrency     | VERSION_CONFLICT            | stored version moved past expected
                | PRECONDITION_FAILED         | batch precondition did not hold
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | update/delete on an append-only record
----------------|-----------------------------|-----------------------------------------
Internal        | INVARIANT_VIOLATED          | stock/total/version invariant broken
----------------|-----------------------------|-----------------------------------------
Session         | NO_ACTIVE_SESSION           | save/update/cancel without a session
                | SESSION_ALREADY_ACTIVE      | second start_edit on the same editor
                | ILLEGAL_SESSION_TRANSITION  | state machine misuse
----------------|-----------------------------|-----------------------------------------
Resolution      | UNKNOWN_RESOLUTION_STRATEGY | strategy name not recognised

===============================================================================
HANDLING PATTERNS
===============================================================================

1. STORE ERRORS ARE RETRYABLE BY THE USER:

    result = mutator.edit_invoice(...)
    if result.error is not None and isinstance(result.error, StoreError):
        show_retry(result.error.code)

2. INVARIANT VIOLATIONS NEED A DEVELOPER:

    except InvariantViolationError as e:
        log.error("invariant_violated", extra={"invariant": e.invariant})
"""


class InvoiceKernelError(Exception):
    """
    Base exception for all invoice kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "INVOICE_KERNEL_ERROR"


# Document-related exceptions


class DocumentError(InvoiceKernelError):
    """Base exception for document addressing errors."""

    code: str = "DOCUMENT_ERROR"


class DocumentNotFoundError(DocumentError):
    """Document with given collection/id was not found."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document not found: {collection}/{doc_id}")


class DocumentAlreadyExistsError(DocumentError):
    """Document already exists in an append-only collection."""

    code: str = "DOCUMENT_ALREADY_EXISTS"

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document already exists: {collection}/{doc_id}")


# Store-related exceptions


class StoreError(InvoiceKernelError):
    """
    Base exception for backend failures.

    ``operation`` names what the kernel was doing (``get``, ``query``,
    ``commit``); ``cause`` keeps the original backend exception.
    """

    code: str = "STORE_ERROR"

    def __init__(self, operation: str, detail: str, cause: Exception | None = None):
        self.operation = operation
        self.detail = detail
        self.cause = cause
        super().__init__(f"Store {operation} failed ({self.code}): {detail}")


class StoreUnavailableError(StoreError):
    """Backend unreachable, disconnected, or timed out."""

    code: str = "UNAVAILABLE"


class StorePermissionError(StoreError):
    """Backend refused the operation for lack of privileges."""

    code: str = "PERMISSION_DENIED"


class StoreUnknownError(StoreError):
    """Any backend failure that is not otherwise classified."""

    code: str = "UNKNOWN"


# Concurrency-related exceptions


class ConcurrencyError(InvoiceKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class VersionConflictError(ConcurrencyError):
    """The stored invoice version moved past the caller's expected version."""

    code: str = "VERSION_CONFLICT"

    def __init__(self, invoice_id: str, expected_version: int, actual_version: int | None):
        self.invoice_id = invoice_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on invoice {invoice_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


class PreconditionFailedError(ConcurrencyError):
    """A write batch precondition did not hold at commit time."""

    code: str = "PRECONDITION_FAILED"

    def __init__(self, collection: str, doc_id: str, field: str, expected, actual):
        self.collection = collection
        self.doc_id = doc_id
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Precondition failed on {collection}/{doc_id}: "
            f"{field} expected {expected!r}, found {actual!r}"
        )


# Immutability-related exceptions


class ImmutabilityError(InvoiceKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, collection: str, doc_id: str, reason: str):
        self.collection = collection
        self.doc_id = doc_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {collection}/{doc_id}: {reason}"
        )


# Internal invariants


class InvariantViolationError(InvoiceKernelError):
    """
    A structural invariant would be broken by the pending commit.

    Never expected in practice: validation should have rejected the edit
    first.  Raised so the operation aborts before anything is written.
    """

    code: str = "INVARIANT_VIOLATED"

    def __init__(self, invariant: str, detail: str):
        self.invariant = invariant
        self.detail = detail
        super().__init__(f"Invariant {invariant} violated: {detail}")


# Session-related exceptions


class SessionError(InvoiceKernelError):
    """Base exception for edit session misuse."""

    code: str = "SESSION_ERROR"


class NoActiveSessionError(SessionError):
    """An operation needed an open edit session and there is none."""

    code: str = "NO_ACTIVE_SESSION"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Cannot {operation}: no active edit session")


class SessionAlreadyActiveError(SessionError):
    """start_edit was called while a session is still open."""

    code: str = "SESSION_ALREADY_ACTIVE"

    def __init__(self, session_id: str, invoice_id: str):
        self.session_id = session_id
        self.invoice_id = invoice_id
        super().__init__(
            f"Edit session {session_id} is already open for invoice {invoice_id}"
        )


class SessionStateError(SessionError):
    """Requested transition is not allowed from the current state."""

    code: str = "ILLEGAL_SESSION_TRANSITION"

    def __init__(self, session_id: str, from_state: str, to_state: str):
        self.session_id = session_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Edit session {session_id} cannot move from {from_state} to {to_state}"
        )


# Conflict resolution


class ResolutionError(InvoiceKernelError):
    """Base exception for conflict resolution errors."""

    code: str = "RESOLUTION_ERROR"


class UnknownResolutionStrategyError(ResolutionError):
    """Strategy name does not match any known resolution strategy."""

    code: str = "UNKNOWN_RESOLUTION_STRATEGY"

    def __init__(self, strategy: str):
        self.strategy = strategy
        super().__init__(f"Unknown resolution strategy: {strategy}")
