"""
ORM-level append-only enforcement.

The store refuses update and delete operations on append-only collections
before it touches the database.  The listeners here are the second check:
they fire on every flush, so code that loads a ``StoredDocument`` and
changes or deletes it directly is stopped too.

    session.flush()
         |
         v
    [before_update] --> _check_append_only_update() --> ImmutabilityViolationError
    [before_delete] --> _check_append_only_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Protected collections: ``audit_trail`` (always), ``transactions`` (always).
"""

from sqlalchemy import event

from invoice_kernel.exceptions import ImmutabilityViolationError
from invoice_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_append_only_update(mapper, connection, target):
    """Prevent any update to a row in an append-only collection."""
    if not target.is_append_only:
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "collection": target.collection,
            "doc_id": target.doc_id,
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        collection=target.collection,
        doc_id=target.doc_id,
        reason="Append-only records cannot be modified",
    )


def _check_append_only_delete(mapper, connection, target):
    """Prevent deletion of a row in an append-only collection."""
    if not target.is_append_only:
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "collection": target.collection,
            "doc_id": target.doc_id,
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        collection=target.collection,
        doc_id=target.doc_id,
        reason="Append-only records cannot be deleted",
    )


def register_immutability_listeners():
    """
    Register the append-only listeners.

    Idempotent.  Call during application start-up, before any writes.
    """
    from invoice_kernel.models.document import StoredDocument

    if not event.contains(StoredDocument, "before_update", _check_append_only_update):
        event.listen(StoredDocument, "before_update", _check_append_only_update)
    if not event.contains(StoredDocument, "before_delete", _check_append_only_delete):
        event.listen(StoredDocument, "before_delete", _check_append_only_delete)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove the append-only listeners.

    WARNING: Only use this in tests that must bypass the ORM check to
    verify the store-level check on its own.
    """
    from invoice_kernel.models.document import StoredDocument

    _safe_remove_listener(StoredDocument, "before_update", _check_append_only_update)
    _safe_remove_listener(StoredDocument, "before_delete", _check_append_only_delete)
