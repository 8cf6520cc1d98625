"""
Pure engines for the invoice edit core.

Stock reconciliation, edit validation and conflict classification.  No
module in this package performs I/O or reads the clock; every input is
passed in by the caller.
"""

from invoice_engines.conflicts import (
    ConflictKind,
    FieldConflict,
    ResolutionStrategy,
    available_strategies,
    detect_field_conflicts,
    resolve,
)
from invoice_engines.reconciliation import (
    EditAnalysis,
    InvoiceDiff,
    LineChange,
    LineChangeKind,
    analyze_edit,
    build_audit_entries,
    diff,
    generate_part_updates,
    missing_parts,
    net_stock_impact,
    restore_all,
)
from invoice_engines.validation import (
    ValidationErrorKind,
    ValidationIssue,
    ValidationResult,
    ValidationWarningKind,
    validate_edit,
)

__all__ = [
    "ConflictKind",
    "EditAnalysis",
    "FieldConflict",
    "InvoiceDiff",
    "LineChange",
    "LineChangeKind",
    "ResolutionStrategy",
    "ValidationErrorKind",
    "ValidationIssue",
    "ValidationResult",
    "ValidationWarningKind",
    "analyze_edit",
    "available_strategies",
    "build_audit_entries",
    "detect_field_conflicts",
    "diff",
    "generate_part_updates",
    "missing_parts",
    "net_stock_impact",
    "resolve",
    "restore_all",
    "validate_edit",
]
