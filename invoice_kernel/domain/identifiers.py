"""
Identifier generation for operations, sessions and documents.

Formats (unix milliseconds come from the injected Clock):

    op_<unixMs>_<9 base36 chars>        one mutation attempt
    session_<unixMs>_<9 base36 chars>   one client process / editor
    edit_<invoiceId>_<unixMs>           one edit session
    INV-<unixMs> / QUO-<unixMs> / TXN-<unixMs>
    audit_<operationId>_<nnn>           audit entries within one operation
"""

import random
import string

from invoice_kernel.domain.clock import Clock

_BASE36 = string.digits + string.ascii_lowercase
_SUFFIX_LENGTH = 9

_rng = random.SystemRandom()


def random_suffix(length: int = _SUFFIX_LENGTH) -> str:
    """Random lowercase base36 string."""
    return "".join(_rng.choice(_BASE36) for _ in range(length))


def new_operation_id(clock: Clock) -> str:
    return f"op_{clock.unix_ms()}_{random_suffix()}"


def new_session_id(clock: Clock) -> str:
    return f"session_{clock.unix_ms()}_{random_suffix()}"


def new_edit_session_id(invoice_id: str, clock: Clock) -> str:
    return f"edit_{invoice_id}_{clock.unix_ms()}"


def new_invoice_number(clock: Clock) -> str:
    return f"INV-{clock.unix_ms()}"


def new_quotation_number(clock: Clock) -> str:
    return f"QUO-{clock.unix_ms()}"


def new_transaction_number(clock: Clock) -> str:
    return f"TXN-{clock.unix_ms()}"


def audit_entry_id(operation_id: str, index: int) -> str:
    """Deterministic audit id for the ``index``-th entry of an operation."""
    return f"audit_{operation_id}_{index:03d}"


def standalone_audit_id(operation_id: str) -> str:
    """Audit id for entries written outside an operation's batch."""
    return f"audit_{operation_id}_{random_suffix()}"
