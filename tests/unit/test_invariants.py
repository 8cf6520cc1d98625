"""Tests for the kernel invariant checks and the kernel import boundary."""

import ast
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

import invoice_kernel
from invoice_kernel.domain.invoice import StockChange, StockReason
from invoice_kernel.exceptions import InvariantViolationError
from invoice_kernel.invariants import (
    ALL_KERNEL_INVARIANTS,
    FORBIDDEN_KERNEL_IMPORTS,
    KernelInvariant,
    assert_commit_invariants,
    check_non_negative_stock,
    check_stock_matches_diff,
    check_total_matches_lines,
    check_version_increment,
)

from conftest import build_invoice

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def stock_change(part_id, before, after, delta=None):
    delta = after - before if delta is None else delta
    return StockChange(
        part_id=part_id,
        part_name=part_id,
        quantity_before=before,
        quantity_after=after,
        delta=delta,
        reason=StockReason.ALLOCATE if delta < 0 else StockReason.RESTORE,
        operation_id="op_1",
        timestamp=NOW,
    )


def test_every_invariant_listed():
    assert ALL_KERNEL_INVARIANTS == frozenset(KernelInvariant)


class TestStock:
    def test_negative_after(self):
        with pytest.raises(InvariantViolationError) as exc_info:
            check_non_negative_stock([stock_change("P1", 2, -1)])
        assert exc_info.value.invariant == KernelInvariant.NON_NEGATIVE_STOCK.value

    def test_after_must_equal_before_plus_delta(self):
        with pytest.raises(InvariantViolationError):
            check_non_negative_stock([stock_change("P1", 10, 7, delta=-2)])

    def test_matches_diff(self):
        check_stock_matches_diff([stock_change("P1", 10, 7)], {"P1": -3})

    def test_missing_write_detected(self):
        with pytest.raises(InvariantViolationError) as exc_info:
            check_stock_matches_diff([], {"P1": -3})
        assert exc_info.value.code == "INVARIANT_VIOLATED"

    def test_skipped_parts_excused(self):
        check_stock_matches_diff([stock_change("P1", 10, 7)], {"P1": -3, "GONE": 2}, ["GONE"])


class TestInvoice:
    def test_version_must_increment_by_one(self):
        original = build_invoice(items=[("P1", 1, "5.00")], version=3)
        check_version_increment(original, replace(original, version=4))
        with pytest.raises(InvariantViolationError):
            check_version_increment(original, replace(original, version=5))

    def test_total_must_match_lines(self):
        invoice = build_invoice(items=[("P1", 2, "5.00")])
        check_total_matches_lines(replace(invoice, total_amount=Decimal("10.01")), Decimal("0.01"))
        with pytest.raises(InvariantViolationError):
            check_total_matches_lines(replace(invoice, total_amount=Decimal("11")), Decimal("0.01"))

    def test_assert_commit_invariants(self):
        original = build_invoice(items=[("P1", 2, "5.00")])
        updated = replace(build_invoice(items=[("P1", 5, "5.00")]), version=2)
        assert_commit_invariants(
            original, updated, [stock_change("P1", 10, 7)], {"P1": -3}, Decimal("0.01")
        )


def _imported_modules(path: Path):
    tree = ast.parse(path.read_text(encoding="utf-8"))
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                yield alias.name
        elif isinstance(node, ast.ImportFrom) and node.module:
            yield node.module


def test_kernel_never_imports_config():
    root = Path(invoice_kernel.__file__).parent
    offenders = [
        f"{path.relative_to(root)}: {module}"
        for path in root.rglob("*.py")
        for module in _imported_modules(path)
        if module.split(".")[0] in FORBIDDEN_KERNEL_IMPORTS
    ]
    assert offenders == []
