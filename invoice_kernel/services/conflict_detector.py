"""
ConflictDetector -- optimistic-concurrency check against the live invoice.

Responsibility:
    Reads the stored invoice immediately before a save and compares its
    version with the version the caller's edit started from.  When the
    stored version is ahead (or the invoice is gone) it returns the remote
    invoice together with the field-level conflicts for the caller to
    resolve.

Architecture position:
    Kernel > Services -- imperative shell.  The field comparison itself is
    the pure ``invoice_engines.conflicts`` engine.

Invariants enforced:
    - Read-only.  A conflict check never writes.
    - Conflicts are never resolved automatically; the caller chooses a
      strategy from ``ConflictCheck.strategies``.

Failure modes:
    - Store read failures propagate as ``StoreError`` subclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from invoice_engines.conflicts import (
    FieldConflict,
    ResolutionStrategy,
    available_strategies,
    detect_field_conflicts,
)
from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.domain.invoice import Invoice
from invoice_kernel.exceptions import StoreError
from invoice_kernel.logging_config import get_logger
from invoice_kernel.models.document import Collection
from invoice_kernel.store.base import DocumentStore

logger = get_logger("services.conflict_detector")


class ConflictReason(str, Enum):
    VERSION_CONFLICT = "VERSION_CONFLICT"
    INVOICE_DELETED = "INVOICE_DELETED"


@dataclass(frozen=True)
class ConflictCheck:
    """
    Outcome of one conflict check.

    ``remote`` is the live invoice (None when it was deleted).  With no
    conflict, ``reason`` is None and ``conflicts`` is empty.
    """

    has_conflicts: bool
    remote: Invoice | None = None
    conflicts: tuple[FieldConflict, ...] = ()
    reason: ConflictReason | None = None
    expected_version: int | None = None
    remote_version: int | None = None

    @property
    def strategies(self) -> tuple[ResolutionStrategy, ...]:
        if not self.has_conflicts:
            return ()
        if self.remote is None:
            return (ResolutionStrategy.ABORT,)
        return available_strategies(self.conflicts)

    @classmethod
    def clear(cls, remote: Invoice, expected_version: int) -> ConflictCheck:
        return cls(
            has_conflicts=False,
            remote=remote,
            expected_version=expected_version,
            remote_version=remote.version,
        )


class ConflictDetector:
    """
    Compares the stored invoice version with the caller's expected version.

    Contract:
        ``check_before_save`` reports a conflict when the stored version is
        greater than ``expected_version`` or the invoice no longer exists.

    Non-goals:
        - Does NOT lock anything.  The atomic mutator's batch precondition
          closes the window between this check and the commit.
    """

    def __init__(self, store: DocumentStore, clock: Clock | None = None):
        self._store = store
        self._clock = clock or SystemClock()

    def load(self, invoice_id: str) -> Invoice | None:
        document = self._store.get(Collection.INVOICES, invoice_id)
        if document is None:
            return None
        return Invoice.from_document(document.id, document.data)

    def check_before_save(
        self,
        invoice_id: str,
        expected_version: int,
        snapshot: Invoice | None = None,
        local: Invoice | None = None,
    ) -> ConflictCheck:
        """
        Check whether another actor committed since the edit started.

        Args:
            invoice_id: Invoice being saved.
            expected_version: Version the edit started from.
            snapshot: The caller's original snapshot; base for classifying
                who changed each field.
            local: The caller's working copy.  Without it the snapshot is
                used, so every differing field reads as ``remote_only``.
        """
        remote = self.load(invoice_id)
        if remote is None:
            logger.warning(
                "conflict_detected",
                extra={
                    "invoice_id": invoice_id,
                    "reason": ConflictReason.INVOICE_DELETED.value,
                    "expected_version": expected_version,
                },
            )
            return ConflictCheck(
                has_conflicts=True,
                reason=ConflictReason.INVOICE_DELETED,
                expected_version=expected_version,
            )

        if remote.version <= expected_version:
            logger.debug(
                "conflict_check_clear",
                extra={"invoice_id": invoice_id, "version": remote.version},
            )
            return ConflictCheck.clear(remote, expected_version)

        conflicts: tuple[FieldConflict, ...] = ()
        if snapshot is not None or local is not None:
            conflicts = detect_field_conflicts(local or snapshot, remote, snapshot)

        logger.warning(
            "conflict_detected",
            extra={
                "invoice_id": invoice_id,
                "reason": ConflictReason.VERSION_CONFLICT.value,
                "expected_version": expected_version,
                "remote_version": remote.version,
                "conflict_count": len(conflicts),
            },
        )
        return ConflictCheck(
            has_conflicts=True,
            remote=remote,
            conflicts=conflicts,
            reason=ConflictReason.VERSION_CONFLICT,
            expected_version=expected_version,
            remote_version=remote.version,
        )


class ConcurrentEditMonitor:
    """
    Advisory re-check while an edit session is open.

    The caller drives the schedule: ``due()`` says whether the interval has
    elapsed and ``poll()`` runs the check only when it has.  A store error
    during polling is logged and the previous result kept; the authoritative
    check happens again at save time.
    """

    def __init__(
        self,
        detector: ConflictDetector,
        invoice_id: str,
        expected_version: int,
        clock: Clock | None = None,
        interval_seconds: int = 30,
        snapshot: Invoice | None = None,
    ):
        self._detector = detector
        self._invoice_id = invoice_id
        self._expected_version = expected_version
        self._clock = clock or SystemClock()
        self._interval = timedelta(seconds=interval_seconds)
        self._snapshot = snapshot
        self._last_checked_at: datetime | None = None
        self._last_result: ConflictCheck | None = None

    @property
    def last_result(self) -> ConflictCheck | None:
        return self._last_result

    def due(self) -> bool:
        if self._last_checked_at is None:
            return True
        return self._clock.now() - self._last_checked_at >= self._interval

    def check_now(self, local: Invoice | None = None) -> ConflictCheck | None:
        self._last_checked_at = self._clock.now()
        try:
            self._last_result = self._detector.check_before_save(
                self._invoice_id,
                self._expected_version,
                snapshot=self._snapshot,
                local=local,
            )
        except StoreError as error:
            logger.warning(
                "conflict_recheck_failed",
                extra={"invoice_id": self._invoice_id, "error_code": error.code},
            )
        return self._last_result

    def poll(self, local: Invoice | None = None) -> ConflictCheck | None:
        """Run the check if the interval has elapsed; else return the last result."""
        if not self.due():
            return self._last_result
        return self.check_now(local)
