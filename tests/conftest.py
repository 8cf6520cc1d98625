"""
Pytest fixtures for the invoice edit core test suite.

Provides:
- A SQLAlchemy engine for the whole session (in-memory SQLite by default)
- A fresh document store per test
- Deterministic clock, seeded parts and invoices
- Captured structured logs

Database selection:
- ``--database-url`` on the command line, else the DATABASE_URL environment
  variable, else ``sqlite:///:memory:``.  PostgreSQL needs the ``postgres``
  extra installed.
"""

import json
import logging
import os
from collections.abc import Iterable
from decimal import Decimal
from io import StringIO

import pytest

from invoice_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from invoice_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from invoice_kernel.domain.clock import DeterministicClock
from invoice_kernel.domain.invoice import Customer, Invoice, LineItem, Part
from invoice_kernel.domain.settings import DEFAULT_SETTINGS
from invoice_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from invoice_kernel.models.document import Collection, StoredDocument
from invoice_kernel.selectors import AuditSelector, InvoiceSelector
from invoice_kernel.services import AtomicMutator, InvoiceEditor
from invoice_kernel.store.sql_store import SqlDocumentStore

DEFAULT_DATABASE_URL = "sqlite:///:memory:"
TEST_SESSION_ID = "session_1704110400000_testsessn"


def pytest_addoption(parser):
    parser.addoption(
        "--database-url",
        action="store",
        default=None,
        help="SQLAlchemy URL of the database to test against",
    )


def get_database_url(config) -> str:
    return (
        config.getoption("--database-url")
        or os.environ.get("DATABASE_URL")
        or DEFAULT_DATABASE_URL
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture invoice_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, mutator):
            mutator.edit_invoice(...)
            logs = captured_logs()
            assert any(r["message"] == "invoice_edit_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("invoice_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(scope="session")
def db_engine(pytestconfig):
    """Single engine for the entire test session."""
    eng = init_engine_from_url(get_database_url(pytestconfig))
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create tables once per session; immutability listeners stay registered."""
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables()


def _delete_all_documents(engine) -> None:
    # Core DELETE bypasses the ORM append-only listeners.
    with engine.begin() as conn:
        conn.execute(StoredDocument.__table__.delete())


@pytest.fixture
def session_factory(db_engine, db_tables):
    _delete_all_documents(db_engine)
    yield get_session_factory()
    _delete_all_documents(db_engine)


@pytest.fixture
def reset_documents(db_engine):
    """Callable that empties the store; for property tests that loop examples."""
    return lambda: _delete_all_documents(db_engine)


@pytest.fixture
def store(session_factory):
    return SqlDocumentStore(session_factory)


# =============================================================================
# Domain builders
# =============================================================================


def build_part(part_id: str, stock: int, name: str | None = None, price: str = "5.00") -> Part:
    return Part(
        id=part_id,
        name=name or f"Part {part_id}",
        code=f"C-{part_id}",
        unit_stock=stock,
        unit_price=Decimal(price),
    )


def build_invoice(
    invoice_id: str = "inv-1",
    items: Iterable[tuple] = (),
    *,
    version: int = 1,
    edit_count: int = 0,
    number: str | None = None,
    notes: str | None = None,
    customer: Customer | None = None,
    created_at=None,
    payment_status: str | None = None,
) -> Invoice:
    """``items`` are ``(part_id, quantity, unit_price)`` tuples."""
    lines = tuple(
        LineItem.of(part_id, f"Part {part_id}", quantity, str(price))
        for part_id, quantity, price in items
    )
    invoice = Invoice(
        id=invoice_id,
        number=number or f"INV-{invoice_id}",
        customer=customer or Customer(name="Ahmad Motors", contact="012-3456789"),
        items=(),
        total_amount=Decimal("0"),
        notes=notes,
        version=version,
        edit_count=edit_count,
        created_at=created_at,
        payment_status=payment_status,
    )
    return invoice.with_items(lines)


@pytest.fixture
def make_part():
    return build_part


@pytest.fixture
def make_invoice(clock):
    def _make(*args, **kwargs):
        kwargs.setdefault("created_at", clock.now())
        return build_invoice(*args, **kwargs)

    return _make


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def settings():
    return DEFAULT_SETTINGS


@pytest.fixture
def mutator(store, clock, settings):
    return AtomicMutator(store, clock=clock, session_id=TEST_SESSION_ID, settings=settings)


@pytest.fixture
def audit(mutator):
    return mutator.audit


@pytest.fixture
def editor(mutator, clock, settings):
    return InvoiceEditor(mutator, clock=clock, settings=settings)


@pytest.fixture
def invoices(store):
    return InvoiceSelector(store)


@pytest.fixture
def audit_trail(store, settings):
    return AuditSelector(store, settings)


@pytest.fixture
def seed(store):
    """Write parts and invoices straight into the store."""

    def _seed(parts: Iterable[Part] = (), invoices: Iterable[Invoice] = (), customer_invoices=()):
        batch = store.batch()
        for part in parts:
            batch.set(Collection.PARTS, part.id, part.to_document())
        for invoice in invoices:
            batch.set(Collection.INVOICES, invoice.id, invoice.to_document())
        for invoice in customer_invoices:
            batch.set(Collection.CUSTOMER_INVOICES, invoice.id, invoice.to_document())
        if len(batch):
            batch.commit()

    return _seed


@pytest.fixture
def stock_of(invoices):
    """Current ``unitStock`` of a part, or None when it does not exist."""

    def _stock(part_id: str) -> int | None:
        part = invoices.get_part(part_id)
        return part.unit_stock if part is not None else None

    return _stock


@pytest.fixture
def audit_docs(store):
    """Every audit document currently stored."""
    return lambda **where: store.query(Collection.AUDIT_TRAIL, where=where or None)
