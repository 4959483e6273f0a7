from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlmodel import select

from common.audit import AuditLogEntry
from conftest import add_customer, add_lot
from fulfillment.kyc import ProfileKycDirectory
from fulfillment.state_machine import (
    ALLOWED_TRANSITIONS,
    apply_destination_gate,
    apply_inventory_gate,
    apply_kyc_gate,
    create_fulfillment_order,
    hold_order,
    release_hold,
    transition,
)
from inventory_ledger.ledger import btc_to_sats
from treasury_domain.errors import InvalidTransition
from treasury_domain.inventory_models import InventoryLot, LotAllocation
from treasury_domain.order_models import (
    FulfillmentOrder,
    FulfillmentStatus as S,
    FulfillmentType,
    KycStatus,
    OrderKycStatus,
)

NOW = datetime(2025, 6, 1, 12, 0, 0)


def _order(session, **kw):
    defaults = dict(
        order_type=FulfillmentType.REDEMPTION,
        usd_value=Decimal("500"),
        btc_amount=Decimal("0.005"),
        destination_address="bc1qdest",
        kyc_status=OrderKycStatus.APPROVED,
    )
    defaults.update(kw)
    order = create_fulfillment_order(session, **defaults)
    session.commit()
    return order


def test_create_lands_in_kyc_pending_with_history(session):
    order = _order(session)

    assert order.status == S.KYC_PENDING
    assert order.revision == 1
    events = session.exec(
        select(AuditLogEntry.event_id).where(AuditLogEntry.entity_id == order.id).order_by(AuditLogEntry.event_id)
    ).all()
    assert events == [f"fulfillment:{order.id}:r0", f"fulfillment:{order.id}:r1"]


def test_happy_path_transitions(session):
    order = _order(session)
    for status in (S.WAITING_INVENTORY, S.READY_TO_SEND, S.SENDING, S.SENT, S.COMPLETED):
        assert transition(session, order, status)
    session.commit()

    assert order.status == S.COMPLETED
    assert order.sent_at is not None and order.completed_at is not None
    assert order.revision == 6


def test_same_state_transition_is_a_noop(session):
    order = _order(session)
    assert transition(session, order, S.KYC_PENDING) is False
    assert order.revision == 1


@pytest.mark.parametrize(
    "path,target",
    [
        ((), S.SENT),
        ((), S.READY_TO_SEND),
        ((S.WAITING_INVENTORY,), S.SENDING),
        ((S.WAITING_INVENTORY, S.READY_TO_SEND, S.SENDING), S.HOLD),
        ((S.WAITING_INVENTORY, S.READY_TO_SEND, S.SENDING, S.FAILED), S.READY_TO_SEND),
    ],
)
def test_invalid_transitions_raise(session, path, target):
    order = _order(session)
    for status in path:
        transition(session, order, status)
    with pytest.raises(InvalidTransition) as exc:
        transition(session, order, target)
    assert exc.value.requested == target.value


def test_terminal_states_have_no_exits():
    assert ALLOWED_TRANSITIONS[S.COMPLETED] == frozenset()
    assert ALLOWED_TRANSITIONS[S.FAILED] == frozenset()


@pytest.mark.parametrize(
    "kyc,expected_status,expected_reason",
    [
        (KycStatus.APPROVED, S.WAITING_INVENTORY, None),
        (KycStatus.PENDING, S.KYC_PENDING, "kyc_pending"),
        (KycStatus.REJECTED, S.KYC_PENDING, "kyc_rejected"),
    ],
)
def test_kyc_gate_reads_customer_profile(session, kyc, expected_status, expected_reason):
    add_customer(session, "cust-1", kyc=kyc)
    order = _order(session, customer_id="cust-1", kyc_status=OrderKycStatus.PENDING)

    apply_kyc_gate(session, order, ProfileKycDirectory(session))

    assert order.status == expected_status
    assert order.blocked_reason == expected_reason


def test_destination_gate_falls_back_to_profile_address(session):
    add_customer(session, "cust-1", btc_address="bc1qprofile")
    order = _order(session, customer_id="cust-1", destination_address=None)
    assert apply_destination_gate(session, order, ProfileKycDirectory(session))
    assert order.destination_address == "bc1qprofile"


def test_destination_gate_blocks_without_address(session):
    order = _order(session, destination_address=None)
    assert not apply_destination_gate(session, order)
    assert order.blocked_reason == "missing_destination_address"


def test_inventory_gate_requires_waiting_inventory(session):
    order = _order(session)
    with pytest.raises(InvalidTransition):
        apply_inventory_gate(session, order, now=NOW)


def test_hold_reverses_allocations_and_release_returns_to_kyc(session):
    lot = add_lot(session, "0.01", received_at=NOW - timedelta(days=2))
    order = _order(session)
    transition(session, order, S.WAITING_INVENTORY)
    assert apply_inventory_gate(session, order, now=NOW).ok
    session.commit()
    assert order.status == S.READY_TO_SEND
    assert session.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("0.005")

    restored = hold_order(session, order, reason="compliance review", actor="ops@example.com")
    session.commit()

    assert restored == Decimal("0.005")
    assert order.status == S.HOLD
    assert order.blocked_reason == "compliance review"
    assert session.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("0.01")
    assert all(a.is_reversed for a in session.exec(select(LotAllocation)).all())

    release_hold(session, order, actor="ops@example.com")
    session.commit()
    assert order.status == S.KYC_PENDING
    assert order.blocked_reason is None


def test_hold_rejected_once_sending(session):
    order = _order(session)
    for status in (S.WAITING_INVENTORY, S.READY_TO_SEND, S.SENDING):
        transition(session, order, status)
    with pytest.raises(InvalidTransition):
        hold_order(session, order, reason="too late", actor="ops")


def test_fulfillment_rows_are_persisted(session):
    order = _order(session)
    stored = session.get(FulfillmentOrder, order.id)
    assert stored.usd_value == Decimal("500.00")
    assert stored.btc_amount == Decimal("0.005")
