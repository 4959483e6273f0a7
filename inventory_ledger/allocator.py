"""FIFO allocation of matured inventory lots to fulfillment orders.

The allocation is all-or-nothing. :func:`allocate_btc_fifo` either reserves
the full requested amount across the oldest eligible lots or changes
nothing. Each lot decrement is a conditional UPDATE guarded by
``amount_available_sats >= draw``, so a lot can never go negative even when
two processes race on the same rows; on PostgreSQL the candidate lots are
additionally locked ``FOR UPDATE`` for the duration of the caller's
transaction.

Functions taking a ``session`` never commit. The queue processor groups the
allocation, the order status change and the audit rows into one transaction
per order. :class:`FifoAllocator` wraps the same primitives for callers that
want a self-contained atomic operation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlmodel import Session, select

from common.audit import AuditAction, log_event
from common.datetime import utcnow
from treasury_domain.db import SessionFactory
from treasury_domain.errors import LotInvariantError
from treasury_domain.inventory_models import InventoryLot, LotAllocation, sats_to_btc
from treasury_observability import metrics as met

from .ledger import btc_to_sats

__all__ = [
    "AllocationResult",
    "FifoAllocator",
    "allocate_btc_fifo",
    "plan_fifo_draws",
    "reverse_allocation",
]

logger = logging.getLogger(__name__)

Draw = Tuple[int, int]  # (lot_id, sats)


@dataclass
class AllocationResult:
    ok: bool
    requested_sats: int
    allocations: List[LotAllocation] = field(default_factory=list)
    shortfall_sats: int = 0

    @property
    def allocated_btc(self) -> Decimal:
        return sats_to_btc(sum(a.amount_sats for a in self.allocations))


def plan_fifo_draws(
    lots: Iterable[Tuple[int, int]], requested_sats: int
) -> Optional[List[Draw]]:
    """Plan draws over ``(lot_id, available_sats)`` pairs given oldest first.

    Returns ``None`` when the lots cannot cover ``requested_sats``.
    """
    if requested_sats <= 0:
        raise ValueError("requested amount must be positive")
    remaining = requested_sats
    draws: List[Draw] = []
    for lot_id, available in lots:
        if remaining == 0:
            break
        if available <= 0:
            continue
        take = min(available, remaining)
        draws.append((lot_id, take))
        remaining -= take
    if remaining > 0:
        return None
    return draws


def _expire_lots(session: Session, lot_ids: Iterable[int]) -> None:
    # guarded UPDATEs bypass the ORM; drop stale copies from the identity map
    ids = set(lot_ids)
    for obj in list(session.identity_map.values()):
        if isinstance(obj, InventoryLot) and obj.id in ids:
            session.expire(obj)


def _eligible_lots(session: Session, now: datetime) -> Sequence[InventoryLot]:
    return session.exec(
        select(InventoryLot)
        .where(
            InventoryLot.eligible_at <= now,
            InventoryLot.amount_available_sats > 0,
        )
        .order_by(InventoryLot.received_at, InventoryLot.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).all()


def allocate_btc_fifo(
    session: Session,
    amount_btc: Decimal | str,
    fulfillment_id: str,
    *,
    now: Optional[datetime] = None,
) -> AllocationResult:
    """Reserve ``amount_btc`` for ``fulfillment_id`` from the oldest eligible lots.

    Insufficient eligible inventory returns ``ok=False`` with nothing changed.
    Raises :class:`LotInvariantError` if a lot moved between planning and the
    guarded decrement; the caller must roll back its transaction.
    """
    requested = btc_to_sats(amount_btc)
    if requested <= 0:
        raise ValueError("allocation amount must be positive")
    now = now or utcnow()

    lots = _eligible_lots(session, now)
    plan = plan_fifo_draws(((lot.id, lot.amount_available_sats) for lot in lots), requested)
    if plan is None:
        available = sum(lot.amount_available_sats for lot in lots)
        met.inventory_allocations_total.labels(outcome="insufficient").inc()
        logger.info(
            "insufficient eligible inventory: requested=%s available=%s",
            sats_to_btc(requested),
            sats_to_btc(available),
            extra={"order_id": fulfillment_id},
        )
        return AllocationResult(
            ok=False, requested_sats=requested, shortfall_sats=requested - available
        )

    allocations: List[LotAllocation] = []
    for lot_id, sats in plan:
        result = session.exec(
            update(InventoryLot)
            .where(
                InventoryLot.id == lot_id,
                InventoryLot.amount_available_sats >= sats,
            )
            .values(amount_available_sats=InventoryLot.amount_available_sats - sats)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            met.inventory_allocations_total.labels(outcome="conflict").inc()
            raise LotInvariantError(
                f"lot {lot_id} no longer holds {sats} sats for order {fulfillment_id}"
            )
        alloc = LotAllocation(lot_id=lot_id, fulfillment_id=fulfillment_id, amount_sats=sats)
        session.add(alloc)
        allocations.append(alloc)
    session.flush()
    _expire_lots(session, (lot_id for lot_id, _ in plan))

    log_event(
        session,
        action=AuditAction.INVENTORY_ALLOCATED,
        entity_type="fulfillment_order",
        entity_id=fulfillment_id,
        details={
            "requested_btc": sats_to_btc(requested),
            "draws": [{"lot_id": lot_id, "btc": sats_to_btc(sats)} for lot_id, sats in plan],
        },
    )
    met.inventory_allocations_total.labels(outcome="ok").inc()
    met.inventory_allocated_sats_total.inc(requested)
    return AllocationResult(ok=True, requested_sats=requested, allocations=allocations)


def reverse_allocation(
    session: Session, fulfillment_id: str, *, reason: Optional[str] = None
) -> Decimal:
    """Return every active allocation of ``fulfillment_id`` to its lot.

    Idempotent: allocations already reversed are skipped, so a second call
    restores nothing and returns ``0``.
    """
    active = session.exec(
        select(LotAllocation)
        .where(
            LotAllocation.fulfillment_id == fulfillment_id,
            LotAllocation.is_reversed == False,  # noqa: E712
        )
        .order_by(LotAllocation.id)
        .with_for_update()
    ).all()
    if not active:
        return Decimal("0")

    now = utcnow()
    restored = 0
    for alloc in active:
        result = session.exec(
            update(InventoryLot)
            .where(
                InventoryLot.id == alloc.lot_id,
                InventoryLot.amount_available_sats + alloc.amount_sats
                <= InventoryLot.amount_total_sats,
            )
            .values(amount_available_sats=InventoryLot.amount_available_sats + alloc.amount_sats)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LotInvariantError(
                f"reversing allocation {alloc.id} would overflow lot {alloc.lot_id}"
            )
        alloc.is_reversed = True
        alloc.reversed_at = now
        session.add(alloc)
        restored += alloc.amount_sats
    session.flush()
    _expire_lots(session, (a.lot_id for a in active))

    log_event(
        session,
        action=AuditAction.INVENTORY_ALLOCATION_REVERSED,
        entity_type="fulfillment_order",
        entity_id=fulfillment_id,
        details={
            "restored_btc": sats_to_btc(restored),
            "allocation_ids": [a.id for a in active],
            "reason": reason,
        },
    )
    met.inventory_reversals_total.inc()
    logger.info(
        "reversed %s BTC of allocations", sats_to_btc(restored), extra={"order_id": fulfillment_id}
    )
    return sats_to_btc(restored)


class FifoAllocator:
    """Self-contained allocation operations, each in its own transaction."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def allocate(
        self, amount_btc: Decimal | str, fulfillment_id: str, *, now: Optional[datetime] = None
    ) -> AllocationResult:
        with self._session_factory() as session:
            try:
                result = allocate_btc_fifo(session, amount_btc, fulfillment_id, now=now)
                if result.ok:
                    session.commit()
                    for alloc in result.allocations:
                        session.refresh(alloc)
                else:
                    session.rollback()
                return result
            except Exception:
                session.rollback()
                raise

    def reverse(self, fulfillment_id: str, *, reason: Optional[str] = None) -> Decimal:
        with self._session_factory() as session:
            try:
                restored = reverse_allocation(session, fulfillment_id, reason=reason)
                session.commit()
                return restored
            except Exception:
                session.rollback()
                raise
