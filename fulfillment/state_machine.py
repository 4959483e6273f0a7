"""Fulfillment order lifecycle.

::

    SUBMITTED -> KYC_PENDING -> WAITING_INVENTORY -> READY_TO_SEND -> SENDING -> SENT -> COMPLETED
                                                                      SENDING -> FAILED
    {SUBMITTED, KYC_PENDING, WAITING_INVENTORY, READY_TO_SEND} -> HOLD -> KYC_PENDING

Every status write goes through :func:`transition`, which validates the edge,
bumps the order revision and appends the audit row in the caller's session.
Gate helpers record why an order could not progress in ``blocked_reason``
instead of raising.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

from sqlmodel import Session

from common.audit import ActorType, AuditAction, log_event
from common.datetime import utcnow
from inventory_ledger.allocator import AllocationResult, allocate_btc_fifo, reverse_allocation
from treasury_domain.errors import InvalidTransition
from treasury_domain.order_models import (
    FulfillmentOrder,
    FulfillmentStatus,
    FulfillmentType,
    KycStatus,
    OrderKycStatus,
)
from treasury_observability import metrics as met

from .kyc import KycDirectory

__all__ = [
    "ALLOWED_TRANSITIONS",
    "GATED_STATES",
    "apply_destination_gate",
    "apply_inventory_gate",
    "apply_kyc_gate",
    "create_fulfillment_order",
    "hold_order",
    "release_hold",
    "set_blocked_reason",
    "transition",
]

logger = logging.getLogger(__name__)

S = FulfillmentStatus

GATED_STATES: FrozenSet[FulfillmentStatus] = frozenset(
    {S.SUBMITTED, S.KYC_PENDING, S.WAITING_INVENTORY, S.READY_TO_SEND}
)

ALLOWED_TRANSITIONS: Dict[FulfillmentStatus, FrozenSet[FulfillmentStatus]] = {
    S.SUBMITTED: frozenset({S.KYC_PENDING, S.HOLD}),
    S.KYC_PENDING: frozenset({S.WAITING_INVENTORY, S.HOLD}),
    S.WAITING_INVENTORY: frozenset({S.READY_TO_SEND, S.HOLD}),
    S.READY_TO_SEND: frozenset({S.SENDING, S.HOLD}),
    S.SENDING: frozenset({S.SENT, S.FAILED}),
    S.SENT: frozenset({S.COMPLETED}),
    S.HOLD: frozenset({S.KYC_PENDING}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
}

KYC_PENDING_REASON = "kyc_pending"
KYC_REJECTED_REASON = "kyc_rejected"
MISSING_DESTINATION_REASON = "missing_destination_address"
INSUFFICIENT_INVENTORY_REASON = "insufficient_inventory"


def transition(
    session: Session,
    order: FulfillmentOrder,
    new_status: FulfillmentStatus,
    *,
    reason: Optional[str] = None,
    actor: str = "system",
    details: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Move *order* to *new_status*. Does not commit.

    Returns ``False`` without writing anything when the order is already in
    *new_status*, so re-running a step is harmless. Raises
    :class:`InvalidTransition` for edges outside :data:`ALLOWED_TRANSITIONS`.
    """
    current = FulfillmentStatus(order.status)
    new_status = FulfillmentStatus(new_status)
    if current == new_status:
        return False
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(order.id, current.value, new_status.value)

    now = now or utcnow()
    order.status = new_status
    order.blocked_reason = reason
    order.revision = (order.revision or 0) + 1
    order.updated_at = now
    if new_status == S.SENT:
        order.sent_at = now
    elif new_status == S.COMPLETED:
        order.completed_at = now
    session.add(order)

    log_event(
        session,
        event_id=f"fulfillment:{order.id}:r{order.revision}",
        action=AuditAction.FULFILLMENT_STATUS_CHANGED,
        entity_type="fulfillment_order",
        entity_id=order.id,
        actor=actor,
        actor_type=ActorType.SYSTEM if actor == "system" else ActorType.ADMIN,
        details={"from": current.value, "to": new_status.value, "reason": reason, **(details or {})},
    )
    met.fulfillment_transitions_total.labels(
        from_status=current.value, to_status=new_status.value
    ).inc()
    logger.info(
        "fulfillment %s -> %s", current.value, new_status.value, extra={"order_id": order.id}
    )
    return True


def set_blocked_reason(order: FulfillmentOrder, reason: Optional[str]) -> bool:
    """Record why a gated order is stuck; no write when unchanged."""
    if order.blocked_reason == reason:
        return False
    order.blocked_reason = reason
    order.updated_at = utcnow()
    return True


def create_fulfillment_order(
    session: Session,
    *,
    order_type: FulfillmentType,
    usd_value: Decimal,
    destination_address: Optional[str] = None,
    customer_id: Optional[str] = None,
    btc_amount: Optional[Decimal] = None,
    btc_price_used: Optional[Decimal] = None,
    swap_order_id: Optional[str] = None,
    bitcard_id: Optional[str] = None,
    kyc_status: OrderKycStatus = OrderKycStatus.PENDING,
    actor: str = "system",
) -> FulfillmentOrder:
    """Insert a SUBMITTED order and move it straight to KYC_PENDING."""
    order = FulfillmentOrder(
        order_type=order_type,
        usd_value=usd_value,
        destination_address=destination_address,
        customer_id=customer_id,
        btc_amount=btc_amount,
        btc_price_used=btc_price_used,
        swap_order_id=swap_order_id,
        bitcard_id=bitcard_id,
        kyc_status=kyc_status,
    )
    session.add(order)
    session.flush()
    log_event(
        session,
        event_id=f"fulfillment:{order.id}:r0",
        action=AuditAction.FULFILLMENT_STATUS_CHANGED,
        entity_type="fulfillment_order",
        entity_id=order.id,
        actor=actor,
        details={
            "from": None,
            "to": S.SUBMITTED.value,
            "order_type": FulfillmentType(order_type).value,
            "usd_value": usd_value,
            "btc_amount": btc_amount,
            "swap_order_id": swap_order_id,
        },
    )
    transition(session, order, S.KYC_PENDING, actor=actor)
    return order


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------

def apply_kyc_gate(session: Session, order: FulfillmentOrder, kyc: KycDirectory) -> bool:
    """KYC_PENDING -> WAITING_INVENTORY when the customer is approved."""
    if order.status != S.KYC_PENDING:
        return order.status in (S.WAITING_INVENTORY, S.READY_TO_SEND)

    if order.customer_id:
        status = kyc.kyc_status(order.customer_id)
        approved = status == KycStatus.APPROVED
        rejected = status == KycStatus.REJECTED
    else:
        approved = order.kyc_status == OrderKycStatus.APPROVED
        rejected = order.kyc_status == OrderKycStatus.REJECTED

    if not approved:
        if set_blocked_reason(order, KYC_REJECTED_REASON if rejected else KYC_PENDING_REASON):
            session.add(order)
        return False

    if order.kyc_status != OrderKycStatus.APPROVED:
        order.kyc_status = OrderKycStatus.APPROVED
    transition(session, order, S.WAITING_INVENTORY)
    return True


def apply_destination_gate(
    session: Session, order: FulfillmentOrder, kyc: Optional[KycDirectory] = None
) -> bool:
    """Fill a missing destination from the customer's profile, else block."""
    if not order.destination_address and order.customer_id and kyc is not None:
        order.destination_address = kyc.btc_address(order.customer_id)
        if order.destination_address:
            session.add(order)
    if order.destination_address:
        return True
    if set_blocked_reason(order, MISSING_DESTINATION_REASON):
        session.add(order)
    return False


def apply_inventory_gate(
    session: Session, order: FulfillmentOrder, *, now: Optional[datetime] = None
) -> AllocationResult:
    """WAITING_INVENTORY -> READY_TO_SEND when the FIFO allocation succeeds."""
    if order.status != S.WAITING_INVENTORY:
        raise InvalidTransition(order.id, FulfillmentStatus(order.status).value, S.READY_TO_SEND.value)
    if order.btc_amount is None or order.btc_amount <= 0:
        raise ValueError(f"order {order.id} has no BTC amount to allocate")

    result = allocate_btc_fifo(session, order.btc_amount, order.id, now=now)
    if result.ok:
        transition(
            session,
            order,
            S.READY_TO_SEND,
            details={"allocated_btc": result.allocated_btc},
        )
    elif set_blocked_reason(order, INSUFFICIENT_INVENTORY_REASON):
        session.add(order)
    return result


# ---------------------------------------------------------------------------
# Administrator controls
# ---------------------------------------------------------------------------

def hold_order(session: Session, order: FulfillmentOrder, *, reason: str, actor: str) -> Decimal:
    """Park a gated order in HOLD, releasing any inventory it holds.

    Returns the BTC returned to inventory.
    """
    current = FulfillmentStatus(order.status)
    if current not in GATED_STATES:
        raise InvalidTransition(order.id, current.value, S.HOLD.value)
    restored = reverse_allocation(session, order.id, reason=f"hold: {reason}")
    transition(session, order, S.HOLD, reason=reason, actor=actor, details={"restored_btc": restored})
    return restored


def release_hold(session: Session, order: FulfillmentOrder, *, actor: str) -> None:
    """HOLD -> KYC_PENDING; the next queue run re-evaluates every gate."""
    transition(session, order, S.KYC_PENDING, actor=actor)
