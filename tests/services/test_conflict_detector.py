"""Tests for ConflictDetector and the advisory ConcurrentEditMonitor."""

from dataclasses import replace

import pytest

from invoice_engines.conflicts import ConflictKind, ResolutionStrategy
from invoice_kernel.exceptions import StoreUnavailableError
from invoice_kernel.models.document import Collection
from invoice_kernel.services import (
    ConcurrentEditMonitor,
    ConflictDetector,
    ConflictReason,
)


@pytest.fixture
def detector(store, clock):
    return ConflictDetector(store, clock=clock)


@pytest.fixture
def stored(seed, make_invoice):
    invoice = make_invoice(items=[("P1", 2, "5.00")], version=3)
    seed(invoices=[invoice])
    return invoice


class TestCheckBeforeSave:
    def test_same_version_is_clear(self, detector, stored):
        result = detector.check_before_save(stored.id, 3)
        assert not result.has_conflicts
        assert result.reason is None
        assert result.remote_version == 3
        assert result.strategies == ()

    def test_lower_remote_version_is_clear(self, detector, stored):
        assert not detector.check_before_save(stored.id, 5).has_conflicts

    def test_newer_remote_version_conflicts(self, detector, seed, stored, captured_logs):
        seed(invoices=[replace(stored, version=4, notes="changed elsewhere")])

        result = detector.check_before_save(stored.id, 3, snapshot=stored)

        assert result.has_conflicts
        assert result.reason == ConflictReason.VERSION_CONFLICT
        assert result.expected_version == 3
        assert result.remote_version == 4
        assert [(c.field, c.kind) for c in result.conflicts] == [
            ("notes", ConflictKind.REMOTE_ONLY)
        ]
        assert result.strategies[0] == ResolutionStrategy.MERGE
        assert any(
            r["message"] == "conflict_detected" and r.get("remote_version") == 4
            for r in captured_logs()
        )

    def test_local_changes_classified_against_snapshot(self, detector, seed, stored):
        seed(invoices=[replace(stored, version=4, notes="theirs")])
        local = replace(stored, notes="mine")

        result = detector.check_before_save(stored.id, 3, snapshot=stored, local=local)

        assert [(c.field, c.kind) for c in result.conflicts] == [
            ("notes", ConflictKind.BOTH_CHANGED)
        ]
        assert result.strategies[0] == ResolutionStrategy.DISCARD_LOCAL_RELOAD_REMOTE

    def test_without_snapshot_no_field_detail(self, detector, seed, stored):
        seed(invoices=[replace(stored, version=4)])
        result = detector.check_before_save(stored.id, 3)
        assert result.has_conflicts
        assert result.conflicts == ()

    def test_deleted_invoice(self, detector, store, stored):
        store.batch().delete(Collection.INVOICES, stored.id).commit()

        result = detector.check_before_save(stored.id, 3, snapshot=stored)

        assert result.has_conflicts
        assert result.reason == ConflictReason.INVOICE_DELETED
        assert result.remote is None
        assert result.strategies == (ResolutionStrategy.ABORT,)

    def test_legacy_invoice_without_version_reads_as_one(self, detector, store):
        store.batch().set(
            Collection.INVOICES,
            "legacy",
            {"invoiceNumber": "INV-OLD", "items": [], "totalAmount": "0"},
        ).commit()
        assert not detector.check_before_save("legacy", 1).has_conflicts


class TestMonitor:
    def test_first_poll_checks(self, detector, stored, clock):
        monitor = ConcurrentEditMonitor(detector, stored.id, 3, clock=clock)
        assert monitor.due()
        result = monitor.poll()
        assert result is not None and not result.has_conflicts

    def test_poll_respects_interval(self, detector, seed, stored, clock):
        monitor = ConcurrentEditMonitor(detector, stored.id, 3, clock=clock, interval_seconds=30)
        monitor.poll()
        seed(invoices=[replace(stored, version=4)])

        clock.advance(10)
        assert not monitor.due()
        assert not monitor.poll().has_conflicts

        clock.advance(20)
        assert monitor.due()
        assert monitor.poll().has_conflicts

    def test_store_error_keeps_previous_result(
        self, detector, store, stored, clock, monkeypatch, captured_logs
    ):
        monitor = ConcurrentEditMonitor(detector, stored.id, 3, clock=clock)
        first = monitor.check_now()

        def down(*args, **kwargs):
            raise StoreUnavailableError("get", "timeout")

        monkeypatch.setattr(store, "get", down)
        assert monitor.check_now() is first
        assert any(r["message"] == "conflict_recheck_failed" for r in captured_logs())

    def test_store_error_before_any_result(self, detector, store, stored, clock, monkeypatch):
        def down(*args, **kwargs):
            raise StoreUnavailableError("get", "timeout")

        monkeypatch.setattr(store, "get", down)
        monitor = ConcurrentEditMonitor(detector, stored.id, 3, clock=clock)
        assert monitor.poll() is None
        assert monitor.last_result is None
