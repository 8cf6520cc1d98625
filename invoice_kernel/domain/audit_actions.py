"""
Audit vocabulary: action names, categories and display text.

Summaries are computed once, when the entry is built, and stored on the
entry so readers of the trail never need to reinterpret ``details``.
"""

from collections.abc import Mapping
from enum import Enum
from typing import Any


class AuditAction(str, Enum):
    """Types of auditable actions."""

    INVOICE_EDIT_STARTED = "invoice_edit_started"
    INVOICE_EDIT_COMPLETED = "invoice_edit_completed"
    INVOICE_DELETED = "invoice_deleted"
    PART_ADDED = "part_added"
    PART_REMOVED = "part_removed"
    PART_MODIFIED = "part_modified"
    CONFLICT_RESOLVED = "conflict_resolved"
    PAYMENT_RECORDED = "payment_recorded"
    ERROR_OCCURRED = "error_occurred"

    @staticmethod
    def stock(operation: str) -> str:
        """Action name for a stock operation (``stock_updated``, ``stock_restored``)."""
        return f"stock_{operation}"


class AuditCategory(str, Enum):
    INVOICE_EDITING = "invoice_editing"
    INVOICE_LIFECYCLE = "invoice_lifecycle"
    STOCK_MANAGEMENT = "stock_management"
    PAYMENTS = "payments"
    ERROR_TRACKING = "error_tracking"


_ACTION_NAMES = {
    "invoice_created": "Invoice Created",
    AuditAction.INVOICE_EDIT_STARTED.value: "Edit Started",
    AuditAction.INVOICE_EDIT_COMPLETED.value: "Edit Completed",
    AuditAction.INVOICE_DELETED.value: "Invoice Deleted",
    "stock_updated": "Stock Updated",
    "stock_restored": "Stock Restored",
    AuditAction.ERROR_OCCURRED.value: "Error Occurred",
}


def format_action_name(action: str) -> str:
    """Display name for an action; unknown actions are title-cased."""
    action = str(getattr(action, "value", action))
    if action in _ACTION_NAMES:
        return _ACTION_NAMES[action]
    return " ".join(word.capitalize() for word in action.split("_"))


def summarize(
    action: str,
    details: Mapping[str, Any],
    invoice_number: str | None = None,
    currency: str = "MYR",
) -> str:
    """Pre-formatted one-line summary stored on each audit entry."""
    action = str(getattr(action, "value", action))
    number = invoice_number or "N/A"

    if action == AuditAction.INVOICE_EDIT_STARTED.value:
        return f"Started editing invoice {number} (version {details.get('originalVersion')})"
    if action == AuditAction.INVOICE_EDIT_COMPLETED.value:
        changes = details.get("changesApplied", {})
        return f"Updated invoice {number} - {changes.get('totalChanges', 0)} changes made"
    if action == AuditAction.INVOICE_DELETED.value:
        restored = details.get("itemsRestored") or []
        return f"Deleted invoice {number} - {len(restored)} items restored to stock"
    if action == AuditAction.PART_ADDED.value:
        return f"Added {details.get('quantity')} x {details.get('partName')} to invoice {number}"
    if action == AuditAction.PART_REMOVED.value:
        return f"Removed {details.get('partName')} from invoice {number}"
    if action == AuditAction.PART_MODIFIED.value:
        return (
            f"Changed {details.get('partName')} on invoice {number} "
            f"({details.get('quantityBefore')} -> {details.get('quantityAfter')})"
        )
    if action == AuditAction.CONFLICT_RESOLVED.value:
        return f"Resolved edit conflict on invoice {number} using {details.get('strategy')}"
    if action == AuditAction.PAYMENT_RECORDED.value:
        return f"Recorded payment of {currency} {details.get('amount')} for invoice {number}"
    if action.startswith("stock_"):
        return f"Updated stock for {details.get('totalPartsAffected', 0)} parts"
    if action == AuditAction.ERROR_OCCURRED.value:
        return f"Error in {details.get('failedAction')}: {details.get('errorMessage')}"
    return f"{format_action_name(action)} - {number}"
