from __future__ import annotations

import threading
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlmodel import select

import inventory_ledger.allocator as allocator_mod
from common.audit import AuditAction, AuditLogEntry
from conftest import add_lot
from inventory_ledger import FifoAllocator, allocate_btc_fifo, plan_fifo_draws, reverse_allocation
from inventory_ledger.ledger import btc_to_sats, check_conservation
from treasury_domain.errors import LotInvariantError
from treasury_domain.inventory_models import InventoryLot, LotAllocation

NOW = datetime(2025, 6, 1, 12, 0, 0)


@pytest.mark.parametrize(
    "lots,requested,expected",
    [
        ([(1, 100), (2, 100)], 50, [(1, 50)]),
        ([(1, 100), (2, 100)], 150, [(1, 100), (2, 50)]),
        ([(1, 100), (2, 100)], 200, [(1, 100), (2, 100)]),
        ([(1, 0), (2, 100)], 80, [(2, 80)]),
        ([(1, 100), (2, 100)], 201, None),
        ([], 1, None),
    ],
)
def test_plan_fifo_draws(lots, requested, expected):
    assert plan_fifo_draws(lots, requested) == expected


def test_plan_rejects_non_positive_amount():
    with pytest.raises(ValueError):
        plan_fifo_draws([(1, 100)], 0)


def test_fifo_draws_oldest_lot_first(session_factory, session):
    newer = add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    older = add_lot(session, "1.0", received_at=NOW - timedelta(days=5))

    result = FifoAllocator(session_factory).allocate("1.2", "order-1", now=NOW)

    assert result.ok
    assert result.allocated_btc == Decimal("1.2")
    assert [(a.lot_id, a.amount_sats) for a in result.allocations] == [
        (older.id, btc_to_sats("1.0")),
        (newer.id, btc_to_sats("0.2")),
    ]
    with session_factory() as s:
        assert s.get(InventoryLot, older.id).amount_available_sats == 0
        assert s.get(InventoryLot, newer.id).amount_available_sats == btc_to_sats("0.8")
        audit = s.exec(
            select(AuditLogEntry).where(AuditLogEntry.action == AuditAction.INVENTORY_ALLOCATED.value)
        ).one()
        assert audit.entity_id == "order-1"
        assert len(audit.details["draws"]) == 2


def test_maturing_lots_are_skipped(session_factory, session):
    add_lot(session, "5.0", received_at=NOW - timedelta(hours=1))
    eligible = add_lot(session, "0.5", received_at=NOW - timedelta(hours=48))

    result = FifoAllocator(session_factory).allocate("0.5", "order-1", now=NOW)

    assert result.ok
    assert [a.lot_id for a in result.allocations] == [eligible.id]


def test_insufficient_inventory_changes_nothing(session_factory, session):
    lot = add_lot(session, "0.4", received_at=NOW - timedelta(days=2))

    result = FifoAllocator(session_factory).allocate("0.5", "order-1", now=NOW)

    assert not result.ok
    assert result.allocations == []
    assert result.shortfall_sats == btc_to_sats("0.1")
    with session_factory() as s:
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("0.4")
        assert s.exec(select(LotAllocation)).all() == []


def test_stale_plan_raises_and_rolls_back(session_factory, session, monkeypatch):
    lot_a = add_lot(session, "0.3", received_at=NOW - timedelta(days=3))
    lot_b = add_lot(session, "0.3", received_at=NOW - timedelta(days=2), available_btc="0.1")

    # planner sees lot B as still full, as if another process drew from it meanwhile
    stale = [
        SimpleNamespace(id=lot_a.id, amount_available_sats=btc_to_sats("0.3")),
        SimpleNamespace(id=lot_b.id, amount_available_sats=btc_to_sats("0.3")),
    ]
    monkeypatch.setattr(allocator_mod, "_eligible_lots", lambda session, now: stale)

    with pytest.raises(LotInvariantError):
        FifoAllocator(session_factory).allocate("0.5", "order-1", now=NOW)

    with session_factory() as s:
        assert s.get(InventoryLot, lot_a.id).amount_available_sats == btc_to_sats("0.3")
        assert s.get(InventoryLot, lot_b.id).amount_available_sats == btc_to_sats("0.1")
        assert s.exec(select(LotAllocation)).all() == []


def test_reverse_is_idempotent(session_factory, session):
    lot = add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    allocator = FifoAllocator(session_factory)
    assert allocator.allocate("0.6", "order-1", now=NOW).ok

    assert allocator.reverse("order-1", reason="cancelled") == Decimal("0.6")
    assert allocator.reverse("order-1") == Decimal("0")

    with session_factory() as s:
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("1.0")
        allocation = s.exec(select(LotAllocation)).one()
        assert allocation.is_reversed
        assert allocation.reversed_at is not None


def test_reverse_refuses_to_overflow_lot(session, session_factory):
    lot = add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    session.add(LotAllocation(lot_id=lot.id, fulfillment_id="order-x", amount_sats=btc_to_sats("0.5")))
    session.commit()

    with session_factory() as s:
        with pytest.raises(LotInvariantError):
            reverse_allocation(s, "order-x")
        s.rollback()

    with session_factory() as s:
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("1.0")


def test_allocate_in_caller_transaction_is_not_committed(session_factory, session):
    lot = add_lot(session, "1.0", received_at=NOW - timedelta(days=2))

    with session_factory() as s:
        assert allocate_btc_fifo(s, "0.4", "order-1", now=NOW).ok
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("0.6")
        s.rollback()

    with session_factory() as s:
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("1.0")


def test_concurrent_allocations_never_overdraw(session_factory, session):
    lot = add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    allocator = FifoAllocator(session_factory)
    start = threading.Barrier(4)
    outcomes = {}

    def worker(order_id: str) -> None:
        start.wait()
        try:
            outcomes[order_id] = allocator.allocate("0.4", order_id, now=NOW)
        except LotInvariantError as exc:
            outcomes[order_id] = exc

    threads = [threading.Thread(target=worker, args=(f"order-{i}",)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(outcomes) == 4
    granted = sorted(k for k, v in outcomes.items() if isinstance(v, allocator_mod.AllocationResult) and v.ok)
    # a loser either saw the shortfall while planning or lost the guarded decrement
    losers = [v for k, v in outcomes.items() if k not in granted]
    assert all(isinstance(v, LotInvariantError) or not v.ok for v in losers)
    assert len(granted) == 2
    with session_factory() as s:
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("0.2")
        assert check_conservation(s, lot.id)
        rows = s.exec(select(LotAllocation)).all()
        assert sorted(r.fulfillment_id for r in rows) == granted
