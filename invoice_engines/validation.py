"""
invoice_engines.validation -- Structural and business-rule checks for invoice edits.

Responsibility:
    Decide whether a modified invoice may be committed given the parts
    snapshot and the stock impact computed by reconciliation.  Blocking
    problems are errors; advisory ones are warnings.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Runs before every save and before every conflict check.

Invariants enforced:
    - Never mutates its inputs.
    - ``is_valid`` is True exactly when ``errors`` is empty; warnings never
      block a commit.
    - A committed invoice re-validated against the post-commit parts with an
      empty impact is always valid.

Failure modes:
    - None raised.  Every problem is reported as a ``ValidationIssue``.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from invoice_engines.reconciliation import index_parts
from invoice_engines.tracer import traced_engine
from invoice_kernel.domain.invoice import Invoice, LineItem, Part
from invoice_kernel.domain.money import amounts_match, line_total, money_to_str
from invoice_kernel.domain.settings import DEFAULT_SETTINGS, EditSettings
from invoice_kernel.logging_config import get_logger

logger = get_logger("engines.validation")


class ValidationErrorKind(str, Enum):
    """Blocking problems."""

    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PART_NOT_FOUND = "PART_NOT_FOUND"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_PRICE = "INVALID_PRICE"
    TOTAL_MISMATCH = "TOTAL_MISMATCH"
    EMPTY_INVOICE = "EMPTY_INVOICE"
    INVALID_INVOICE = "INVALID_INVOICE"


class ValidationWarningKind(str, Enum):
    """Non-blocking problems."""

    LOW_STOCK_AFTER_COMMIT = "LOW_STOCK_AFTER_COMMIT"
    DUPLICATE_PART = "DUPLICATE_PART"
    OLD_INVOICE = "OLD_INVOICE"
    FREQUENTLY_EDITED = "FREQUENTLY_EDITED"
    STALE_SESSION = "STALE_SESSION"


@dataclass(frozen=True)
class ValidationIssue:
    """
    A single validation error or warning.

    Contract:
        ``code`` is machine-readable; ``details`` carries the numbers the UI
        needs (for stock errors: ``required``, ``available``, ``shortage``).

    Non-goals:
        - Does NOT raise; it IS the error representation.
    """

    code: str
    message: str
    part_id: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = {"code": self.code, "message": self.message, **dict(self.details)}
        if self.part_id is not None:
            data["partId"] = self.part_id
        return data


@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of validating one invoice.

    Guarantees:
        - errors and warnings are always tuples (never None).
        - bool(result) == result.is_valid.
    """

    is_valid: bool
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @classmethod
    def of(
        cls,
        errors: Iterable[ValidationIssue],
        warnings: Iterable[ValidationIssue] = (),
    ) -> ValidationResult:
        errors = tuple(errors)
        return cls(is_valid=not errors, errors=errors, warnings=tuple(warnings))

    @property
    def error_codes(self) -> tuple[str, ...]:
        return tuple(issue.code for issue in self.errors)

    @property
    def warning_codes(self) -> tuple[str, ...]:
        return tuple(issue.code for issue in self.warnings)

    def errors_for(self, code: str) -> tuple[ValidationIssue, ...]:
        return tuple(issue for issue in self.errors if issue.code == code)

    def __bool__(self) -> bool:
        return self.is_valid


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _is_valid_quantity(quantity: Any) -> bool:
    return isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0


def _check_identity(modified: Invoice, original: Invoice | None) -> list[ValidationIssue]:
    issues = []
    if not modified.id:
        issues.append(
            ValidationIssue(ValidationErrorKind.INVALID_INVOICE.value, "Invoice must have an ID")
        )
    if not modified.number:
        issues.append(
            ValidationIssue(
                ValidationErrorKind.INVALID_INVOICE.value,
                "Invoice must have an invoice number",
                details={"invoiceId": modified.id},
            )
        )
    if original is not None and modified.id != original.id:
        issues.append(
            ValidationIssue(
                ValidationErrorKind.INVALID_INVOICE.value,
                "Edited invoice does not match the invoice being edited",
                details={"invoiceId": modified.id, "originalId": original.id},
            )
        )
    return issues


def _check_line(item: LineItem, settings: EditSettings) -> list[ValidationIssue]:
    issues = []
    quantity_ok = _is_valid_quantity(item.quantity)
    if not quantity_ok:
        issues.append(
            ValidationIssue(
                ValidationErrorKind.INVALID_QUANTITY.value,
                f"Quantity for {item.part_name or item.part_id} must be a whole number greater than 0",
                part_id=item.part_id,
                details={"quantity": item.quantity},
            )
        )

    price = item.unit_price
    if not price.is_finite() or price < 0:
        issues.append(
            ValidationIssue(
                ValidationErrorKind.INVALID_PRICE.value,
                f"Unit price for {item.part_name or item.part_id} must be 0 or greater",
                part_id=item.part_id,
                details={"unitPrice": str(price)},
            )
        )
        return issues

    if quantity_ok:
        expected = line_total(item.quantity, price, settings.currency_decimal_places)
        if not amounts_match(item.line_total, expected, settings.total_tolerance):
            issues.append(
                ValidationIssue(
                    ValidationErrorKind.INVALID_PRICE.value,
                    f"Line total for {item.part_name or item.part_id} is incorrect",
                    part_id=item.part_id,
                    details={"expected": money_to_str(expected), "actual": str(item.line_total)},
                )
            )
    return issues


def _check_stock(
    impact: Mapping[str, int],
    parts: Mapping[str, Part],
    settings: EditSettings,
) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    for part_id in sorted(impact):
        delta = impact[part_id]
        part = parts.get(part_id)
        if part is None or delta >= 0:
            continue
        required = -delta
        available = part.unit_stock
        if required > available:
            errors.append(
                ValidationIssue(
                    ValidationErrorKind.INSUFFICIENT_STOCK.value,
                    f"Insufficient stock for {part.name}. Required: {required}, Available: {available}",
                    part_id=part_id,
                    details={
                        "partName": part.name,
                        "required": required,
                        "available": available,
                        "shortage": required - available,
                    },
                )
            )
        elif available - required <= settings.low_stock_threshold:
            remaining = available - required
            warnings.append(
                ValidationIssue(
                    ValidationWarningKind.LOW_STOCK_AFTER_COMMIT.value,
                    f"{part.name} will have low stock ({remaining}) after this change",
                    part_id=part_id,
                    details={"partName": part.name, "remainingStock": remaining},
                )
            )
    return errors, warnings


def _check_age(
    invoice: Invoice,
    settings: EditSettings,
    now: datetime | None,
    session_started_at: datetime | None,
) -> list[ValidationIssue]:
    warnings = []
    if now is not None and invoice.created_at is not None:
        created_at = invoice.created_at
        if created_at.tzinfo is None and now.tzinfo is not None:
            created_at = created_at.replace(tzinfo=now.tzinfo)
        age_days = (now - created_at).days
        if age_days > settings.old_invoice_days:
            warnings.append(
                ValidationIssue(
                    ValidationWarningKind.OLD_INVOICE.value,
                    f"This invoice is {age_days} days old. Consider creating a new invoice instead.",
                    details={"invoiceId": invoice.id, "daysSinceCreated": age_days},
                )
            )
    if invoice.edit_count > settings.frequent_edit_count:
        warnings.append(
            ValidationIssue(
                ValidationWarningKind.FREQUENTLY_EDITED.value,
                f"This invoice has been edited {invoice.edit_count} times. Consider reviewing for accuracy.",
                details={"invoiceId": invoice.id, "editCount": invoice.edit_count},
            )
        )
    if now is not None and session_started_at is not None:
        minutes = int((now - session_started_at).total_seconds() // 60)
        if minutes > settings.stale_session_minutes:
            warnings.append(
                ValidationIssue(
                    ValidationWarningKind.STALE_SESSION.value,
                    f"This edit session has been open for {minutes} minutes. Consider refreshing the data.",
                    details={"sessionAgeMinutes": minutes},
                )
            )
    return warnings


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


@traced_engine("validation", "1.0", fingerprint_fields=("modified", "impact"))
def validate_edit(
    modified: Invoice,
    original: Invoice | None,
    current_parts: Mapping[str, Part] | Iterable[Part],
    impact: Mapping[str, int],
    settings: EditSettings = DEFAULT_SETTINGS,
    *,
    now: datetime | None = None,
    session_started_at: datetime | None = None,
) -> ValidationResult:
    """
    Validate a modified invoice before it is committed.

    Args:
        modified: The invoice as the caller wants it saved.
        original: The snapshot the edit started from (None when validating
            a stand-alone invoice).
        current_parts: Parts snapshot supplied by the caller.
        impact: Net stock impact of the edit (negative = allocate).
        settings: Thresholds and tolerances.
        now: Current time; enables the age and stale-session warnings.
        session_started_at: When the edit session opened.

    Returns:
        ValidationResult with every error and warning found.
    """
    parts = index_parts(current_parts)
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    errors.extend(_check_identity(modified, original))

    if not modified.items:
        errors.append(
            ValidationIssue(
                ValidationErrorKind.EMPTY_INVOICE.value,
                "Invoice must have at least one item",
                details={"invoiceId": modified.id},
            )
        )

    for item in modified.items:
        errors.extend(_check_line(item, settings))

    for part_id in sorted({item.part_id for item in modified.items}):
        if part_id not in parts:
            errors.append(
                ValidationIssue(
                    ValidationErrorKind.PART_NOT_FOUND.value,
                    f"Part with ID {part_id} no longer exists",
                    part_id=part_id,
                    details={"suggestedAction": "Remove this part from the invoice"},
                )
            )

    stock_errors, stock_warnings = _check_stock(impact, parts, settings)
    errors.extend(stock_errors)
    warnings.extend(stock_warnings)

    items_total = modified.items_total
    if not amounts_match(items_total, modified.total_amount, settings.total_tolerance):
        errors.append(
            ValidationIssue(
                ValidationErrorKind.TOTAL_MISMATCH.value,
                f"Invoice total is incorrect. Expected: {money_to_str(items_total)}, "
                f"Actual: {modified.total_amount}",
                details={
                    "expected": money_to_str(items_total),
                    "actual": str(modified.total_amount),
                },
            )
        )

    counts = Counter(item.part_id for item in modified.items)
    duplicates = sorted(part_id for part_id, count in counts.items() if count > 1)
    if duplicates:
        warnings.append(
            ValidationIssue(
                ValidationWarningKind.DUPLICATE_PART.value,
                f"Invoice contains duplicate parts: {', '.join(duplicates)}",
                details={"duplicates": duplicates},
            )
        )

    warnings.extend(_check_age(original or modified, settings, now, session_started_at))

    result = ValidationResult.of(errors, warnings)
    if not result.is_valid:
        logger.info(
            "invoice_validation_failed",
            extra={"invoice_id": modified.id, "error_codes": list(result.error_codes)},
        )
    return result
