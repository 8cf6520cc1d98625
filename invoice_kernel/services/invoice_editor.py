"""
InvoiceEditor -- edit-session state machine behind the invoice edit screen.

Responsibility:
    Holds one in-memory working copy of an invoice between ``start_edit``
    and a commit, cancel or abort, and drives it through the session
    states.  Every state change and every re-validation is published to
    subscribed listeners so screens observe the session instead of sharing
    mutable state.

Architecture position:
    Kernel > Services -- imperative shell.  Delegates every write to
    ``AtomicMutator``.  Its own writes are best-effort audit entries:
    edit start, local validation failures and conflict resolutions.

Invariants enforced:
    - At most one open session per editor (single writer).
    - Transitions follow ``idle -> editing -> validating -> conflict_check
      -> committing -> {committed | conflicted | invalid | failed}``.
      ``conflicted`` returns to ``editing`` through a resolution strategy;
      the other outcomes end the session.
    - ``cancel_edit`` before a commit costs nothing and writes nothing.

Failure modes:
    - ``NoActiveSessionError`` when an operation needs an open session.
    - ``SessionAlreadyActiveError`` when ``start_edit`` is called twice.
    - ``SessionStateError`` on an illegal transition.
    - ``DocumentNotFoundError`` when ``start_edit`` names a missing invoice.
    - An exception raised during a commit ends the session in ``failed``
      and is re-raised.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from invoice_engines.conflicts import ResolutionStrategy, resolve
from invoice_engines.reconciliation import analyze_edit, index_parts
from invoice_engines.validation import ValidationResult, validate_edit
from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.domain.identifiers import new_edit_session_id, new_operation_id
from invoice_kernel.domain.invoice import Invoice, Part
from invoice_kernel.domain.settings import DEFAULT_SETTINGS, EditSettings
from invoice_kernel.exceptions import (
    DocumentNotFoundError,
    NoActiveSessionError,
    SessionAlreadyActiveError,
    SessionStateError,
)
from invoice_kernel.logging_config import LogContext, get_logger
from invoice_kernel.models.document import Collection
from invoice_kernel.services.atomic_mutator import (
    AtomicMutator,
    DeleteResult,
    EditResult,
    MutationPhase,
    MutationStatus,
)
from invoice_kernel.services.conflict_detector import ConcurrentEditMonitor, ConflictCheck

logger = get_logger("services.invoice_editor")


class SessionState(str, Enum):
    IDLE = "idle"
    EDITING = "editing"
    VALIDATING = "validating"
    CONFLICT_CHECK = "conflict_check"
    COMMITTING = "committing"
    COMMITTED = "committed"
    CONFLICTED = "conflicted"
    INVALID = "invalid"
    FAILED = "failed"


_TERMINAL_STATES = frozenset(
    {SessionState.COMMITTED, SessionState.INVALID, SessionState.FAILED}
)

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.EDITING}),
    SessionState.EDITING: frozenset(
        {SessionState.VALIDATING, SessionState.CONFLICT_CHECK, SessionState.IDLE}
    ),
    SessionState.VALIDATING: frozenset({SessionState.EDITING, SessionState.CONFLICT_CHECK}),
    SessionState.CONFLICT_CHECK: frozenset(
        {SessionState.COMMITTING, SessionState.CONFLICTED, SessionState.INVALID, SessionState.FAILED}
    ),
    SessionState.COMMITTING: frozenset(
        {
            SessionState.COMMITTED,
            SessionState.CONFLICTED,
            SessionState.INVALID,
            SessionState.FAILED,
        }
    ),
    SessionState.CONFLICTED: frozenset({SessionState.EDITING, SessionState.IDLE}),
    SessionState.COMMITTED: frozenset({SessionState.IDLE}),
    SessionState.INVALID: frozenset({SessionState.IDLE}),
    SessionState.FAILED: frozenset({SessionState.IDLE}),
}

_RESULT_STATES = {
    MutationStatus.COMMITTED: SessionState.COMMITTED,
    MutationStatus.CONFLICTED: SessionState.CONFLICTED,
    MutationStatus.INVALID: SessionState.INVALID,
    MutationStatus.FAILED: SessionState.FAILED,
}


@dataclass(frozen=True)
class EditSession:
    """In-memory working copy of one invoice."""

    id: str
    invoice_id: str
    original_snapshot: Invoice
    current: Invoice
    started_at: datetime
    dirty: bool = False
    state: SessionState = SessionState.EDITING


class SessionEventKind(str, Enum):
    STATE_CHANGED = "state_changed"
    VALIDATION_UPDATED = "validation_updated"


@dataclass(frozen=True)
class SessionEvent:
    """One notification delivered to editor listeners."""

    kind: SessionEventKind
    session_id: str | None
    invoice_id: str | None
    state: SessionState
    previous_state: SessionState | None = None
    validation: ValidationResult | None = None
    result: EditResult | DeleteResult | None = None


SessionListener = Callable[[SessionEvent], None]


class InvoiceEditor:
    """
    Drives one edit session at a time.

    Contract:
        ``start_edit`` opens a session; ``update_edit`` changes the working
        copy and re-validates it; ``save_edit`` and ``delete_invoice``
        commit through the atomic mutator; ``cancel_edit`` drops the
        session; ``resolve_conflicts`` applies the caller's strategy after
        a conflicted save.

    Guarantees:
        - Listeners see every state change in order.
        - A failed local validation keeps the session open in ``editing``
          so the caller can fix the errors.

    Non-goals:
        - Does NOT read parts.  Callers pass the current parts snapshot.
    """

    def __init__(
        self,
        mutator: AtomicMutator,
        clock: Clock | None = None,
        settings: EditSettings = DEFAULT_SETTINGS,
    ):
        self._mutator = mutator
        self._clock = clock or SystemClock()
        self._settings = settings
        self._session: EditSession | None = None
        self._state = SessionState.IDLE
        self._listeners: list[SessionListener] = []
        self._conflict: ConflictCheck | None = None
        self._pending_resolution: tuple[ResolutionStrategy, ConflictCheck] | None = None
        self._monitor: ConcurrentEditMonitor | None = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> EditSession | None:
        return self._session

    @property
    def conflict(self) -> ConflictCheck | None:
        """The conflict that put the session in ``conflicted``."""
        return self._conflict

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def _transition(
        self,
        to_state: SessionState,
        result: EditResult | DeleteResult | None = None,
    ) -> None:
        from_state = self._state
        session_id = self._session.id if self._session is not None else None
        if to_state not in _TRANSITIONS[from_state]:
            raise SessionStateError(session_id or "-", from_state.value, to_state.value)
        self._state = to_state
        if self._session is not None:
            self._session = replace(self._session, state=to_state)
        logger.debug(
            "edit_session_transition",
            extra={"from_state": from_state.value, "to_state": to_state.value},
        )
        self._emit(
            SessionEvent(
                kind=SessionEventKind.STATE_CHANGED,
                session_id=session_id,
                invoice_id=self._session.invoice_id if self._session is not None else None,
                state=to_state,
                previous_state=from_state,
                result=result,
            )
        )

    def _require_session(self, operation: str, *states: SessionState) -> EditSession:
        if self._session is None:
            raise NoActiveSessionError(operation)
        if states and self._state not in states:
            raise SessionStateError(self._session.id, self._state.value, operation)
        return self._session

    def _end_session(self) -> None:
        self._transition(SessionState.IDLE)
        self._session = None
        self._conflict = None
        self._pending_resolution = None
        self._monitor = None

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_edit(self, invoice: str | Invoice) -> EditSession:
        """
        Open a session on an invoice id (loaded from the store) or on a
        snapshot the caller already holds.
        """
        if self._session is not None:
            raise SessionAlreadyActiveError(self._session.id, self._session.invoice_id)

        if isinstance(invoice, Invoice):
            snapshot = invoice
        else:
            snapshot = self._mutator.detector.load(invoice)
            if snapshot is None:
                raise DocumentNotFoundError(Collection.INVOICES.value, invoice)

        now = self._clock.now()
        self._session = EditSession(
            id=new_edit_session_id(snapshot.id, self._clock),
            invoice_id=snapshot.id,
            original_snapshot=snapshot,
            current=snapshot,
            started_at=now,
            state=SessionState.IDLE,
        )
        self._monitor = ConcurrentEditMonitor(
            self._mutator.detector,
            snapshot.id,
            snapshot.version,
            clock=self._clock,
            interval_seconds=self._settings.conflict_recheck_seconds,
            snapshot=snapshot,
        )

        with LogContext.bind(session_id=self._mutator.session_id, invoice_id=snapshot.id):
            audit = self._mutator.audit
            audit.append_best_effort(
                audit.record_edit_start(
                    snapshot.id,
                    snapshot,
                    operation_id=new_operation_id(self._clock),
                    edit_session_id=self._session.id,
                )
            )
            logger.info(
                "edit_session_started",
                extra={"edit_session_id": self._session.id, "version": snapshot.version},
            )
        self._transition(SessionState.EDITING)
        return self._session

    def update_edit(
        self,
        patch: Mapping[str, Any],
        current_parts: Mapping[str, Part] | Iterable[Part],
    ) -> ValidationResult:
        """Apply ``patch`` to the working copy and re-validate it."""
        session = self._require_session("update_edit", SessionState.EDITING)
        updated = session.current.apply_patch(patch)
        self._session = replace(session, current=updated, dirty=True)
        validation = self._validate(current_parts)
        self._emit(
            SessionEvent(
                kind=SessionEventKind.VALIDATION_UPDATED,
                session_id=session.id,
                invoice_id=session.invoice_id,
                state=self._state,
                validation=validation,
            )
        )
        return validation

    def cancel_edit(self) -> None:
        """Drop the session.  Nothing is written."""
        session = self._require_session(
            "cancel_edit", SessionState.EDITING, SessionState.CONFLICTED
        )
        logger.info(
            "edit_session_cancelled",
            extra={"edit_session_id": session.id, "dirty": session.dirty},
        )
        self._end_session()

    def check_for_remote_changes(self) -> ConflictCheck | None:
        """Advisory re-check; runs only when the re-check interval has elapsed."""
        session = self._require_session("check_for_remote_changes")
        return self._monitor.poll(session.current)

    # ------------------------------------------------------------------
    # Commit paths
    # ------------------------------------------------------------------

    def _validate(self, current_parts: Mapping[str, Part] | Iterable[Part]) -> ValidationResult:
        session = self._session
        parts = index_parts(current_parts)
        analysis = analyze_edit(session.original_snapshot, session.current, parts)
        return validate_edit(
            session.current,
            session.original_snapshot,
            parts,
            analysis.impact,
            self._settings,
            now=self._clock.now(),
            session_started_at=session.started_at,
        )

    def _on_phase(self, phase: MutationPhase) -> None:
        if phase == MutationPhase.COMMITTING:
            self._transition(SessionState.COMMITTING)

    def _finish(self, result: EditResult | DeleteResult) -> None:
        self._transition(_RESULT_STATES[result.status], result)
        if result.status == MutationStatus.CONFLICTED:
            self._conflict = result.conflict
            return
        self._end_session()

    def _abandon(self, error: Exception) -> None:
        """End a session whose commit raised instead of returning a result."""
        logger.error(
            "edit_session_abandoned",
            extra={"from_state": self._state.value, "error_code": getattr(error, "code", None)},
        )
        if SessionState.FAILED in _TRANSITIONS[self._state]:
            self._transition(SessionState.FAILED)
        self._end_session()

    def save_edit(self, current_parts: Mapping[str, Part] | Iterable[Part]) -> EditResult:
        """
        Validate and commit the working copy.

        A local validation failure returns an ``invalid`` result without
        calling the mutator, records a best-effort error audit entry and
        leaves the session in ``editing``.
        """
        session = self._require_session("save_edit", SessionState.EDITING)
        self._transition(SessionState.VALIDATING)
        validation = self._validate(current_parts)
        if not validation.is_valid:
            self._transition(SessionState.EDITING)
            self._emit(
                SessionEvent(
                    kind=SessionEventKind.VALIDATION_UPDATED,
                    session_id=session.id,
                    invoice_id=session.invoice_id,
                    state=self._state,
                    validation=validation,
                )
            )
            operation_id = new_operation_id(self._clock)
            audit = self._mutator.audit
            audit.append_best_effort(
                audit.record_error(
                    "edit_invoice",
                    "Invoice validation failed",
                    {
                        "invoiceId": session.invoice_id,
                        "invoiceNumber": session.current.number,
                        "errorCode": "VALIDATION_FAILED",
                        "validationErrors": [issue.to_dict() for issue in validation.errors],
                        "severity": "low",
                        "recoveryAction": "fix_validation_errors",
                    },
                    operation_id=operation_id,
                )
            )
            return EditResult(
                MutationStatus.INVALID,
                operation_id,
                validation=validation,
                warnings=validation.warnings,
            )

        self._transition(SessionState.CONFLICT_CHECK)
        strategy, resolved = None, ()
        if self._pending_resolution is not None:
            strategy, check = self._pending_resolution
            resolved = check.conflicts
        try:
            result = self._mutator.edit_invoice(
                session.invoice_id,
                session.current,
                current_parts,
                session.original_snapshot,
                session_started_at=session.started_at,
                resolution_strategy=strategy,
                resolved_conflicts=resolved,
                on_phase=self._on_phase,
            )
        except Exception as error:
            self._abandon(error)
            raise
        self._finish(result)
        return result

    def delete_invoice(self, current_parts: Mapping[str, Part] | Iterable[Part]) -> DeleteResult:
        """Delete the invoice the session was opened on."""
        session = self._require_session("delete_invoice", SessionState.EDITING)
        self._transition(SessionState.CONFLICT_CHECK)
        try:
            result = self._mutator.delete_invoice(
                session.invoice_id,
                session.original_snapshot,
                current_parts,
                on_phase=self._on_phase,
            )
        except Exception as error:
            self._abandon(error)
            raise
        self._finish(result)
        return result

    def resolve_conflicts(
        self,
        strategy: str | ResolutionStrategy,
        resolved_invoice: Invoice | None = None,
        current_parts: Mapping[str, Part] | Iterable[Part] | None = None,
    ) -> EditResult | None:
        """
        Apply a resolution strategy to a conflicted session.

        ``abort`` ends the session.  The other strategies rebase the session
        on the remote invoice and return to ``editing``; ``resolved_invoice``
        overrides the computed working copy.  With ``current_parts`` a
        merge or overwrite is saved immediately and its result returned.
        """
        chosen = ResolutionStrategy.parse(strategy)
        session = self._require_session("resolve_conflicts", SessionState.CONFLICTED)
        check = self._conflict
        remote = check.remote if check is not None else None

        if chosen == ResolutionStrategy.ABORT or remote is None:
            self._record_resolution(chosen, remote or session.original_snapshot, check)
            logger.info("edit_session_aborted", extra={"edit_session_id": session.id})
            self._end_session()
            return None

        working = resolved_invoice or resolve(
            chosen, session.current, remote, session.original_snapshot
        )
        self._session = replace(
            session,
            original_snapshot=remote,
            current=working,
            dirty=chosen != ResolutionStrategy.DISCARD_LOCAL_RELOAD_REMOTE,
        )
        self._conflict = None
        self._monitor = ConcurrentEditMonitor(
            self._mutator.detector,
            remote.id,
            remote.version,
            clock=self._clock,
            interval_seconds=self._settings.conflict_recheck_seconds,
            snapshot=remote,
        )

        if chosen == ResolutionStrategy.DISCARD_LOCAL_RELOAD_REMOTE:
            self._pending_resolution = None
            self._record_resolution(chosen, remote, check)
            self._transition(SessionState.EDITING)
            return None

        self._pending_resolution = (chosen, check)
        self._transition(SessionState.EDITING)
        if current_parts is None:
            return None
        return self.save_edit(current_parts)

    def _record_resolution(
        self,
        strategy: ResolutionStrategy,
        invoice: Invoice,
        check: ConflictCheck | None,
    ) -> None:
        audit = self._mutator.audit
        audit.append_best_effort(
            audit.record_conflict_resolution(
                invoice,
                strategy,
                check.conflicts if check is not None else (),
                operation_id=new_operation_id(self._clock),
            )
        )
