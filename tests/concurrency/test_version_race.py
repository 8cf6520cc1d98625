"""
Two actors editing the same invoice from the same starting version.

Exactly one commit wins.  The loser writes nothing and sees the winner's
invoice as the remote version.
"""

from dataclasses import replace

import pytest

from invoice_kernel.domain.invoice import LineItem
from invoice_kernel.services import AtomicMutator, MutationPhase, MutationStatus


@pytest.fixture
def actors(store, clock, settings):
    return (
        AtomicMutator(store, clock=clock, session_id="session_front_desk", settings=settings),
        AtomicMutator(store, clock=clock, session_id="session_workshop", settings=settings),
    )


@pytest.fixture
def start(seed, make_part, make_invoice):
    parts = [make_part("P1", 10), make_part("P2", 10)]
    invoice = make_invoice(items=[("P1", 2, "5.00")])
    seed(parts=parts, invoices=[invoice])
    return invoice, parts


def with_quantity(invoice, quantity):
    return invoice.with_items([LineItem.of("P1", "Part P1", quantity, "5.00")])


def test_sequential_saves_from_same_version(actors, start, invoices, stock_of):
    first, second = actors
    v1, parts = start

    won = first.edit_invoice(v1.id, with_quantity(v1, 4), parts, v1)
    lost = second.edit_invoice(v1.id, with_quantity(v1, 7), parts, v1)

    assert won.status == MutationStatus.COMMITTED
    assert lost.status == MutationStatus.CONFLICTED
    assert lost.remote.items[0].quantity == 4
    assert invoices.get_invoice(v1.id).version == 2
    assert stock_of("P1") == 8


def test_interleaved_after_conflict_check(actors, start, invoices, stock_of, audit_docs):
    """The second actor commits between the first actor's check and its commit."""
    first, second = actors
    v1, parts = start
    results = {}

    def interleave(phase):
        if phase == MutationPhase.COMMITTING and "second" not in results:
            results["second"] = second.edit_invoice(
                v1.id, v1.with_items([*v1.items, LineItem.of("P2", "Part P2", 3, "1.00")]), parts, v1
            )

    results["first"] = first.edit_invoice(v1.id, with_quantity(v1, 9), parts, v1, on_phase=interleave)

    assert results["second"].ok
    assert results["first"].status == MutationStatus.CONFLICTED
    saved = invoices.get_invoice(v1.id)
    assert saved.version == 2
    assert saved.quantities_by_part() == {"P1": 2, "P2": 3}
    assert stock_of("P1") == 10
    assert stock_of("P2") == 7
    assert [d.get("action") for d in audit_docs(operationId=results["first"].operation_id)] == [
        "error_occurred"
    ]


def test_loser_can_rebase_and_save(actors, start, invoices, stock_of):
    first, second = actors
    v1, parts = start
    assert first.edit_invoice(v1.id, replace(v1, notes="first"), parts, v1).ok
    lost = second.edit_invoice(v1.id, with_quantity(v1, 3), parts, v1)

    remote = lost.remote
    retried = second.edit_invoice(v1.id, with_quantity(remote, 3), parts, remote)

    assert retried.ok
    saved = invoices.get_invoice(v1.id)
    assert saved.version == 3
    assert saved.notes == "first"
    assert stock_of("P1") == 9
