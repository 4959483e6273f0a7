"""Broadcast step for READY_TO_SEND fulfillment orders.

The move to SENDING is committed before the signer is called, so a crash
mid-send leaves a visible SENDING order rather than a second payout on the
next run. The signer outcome is then written in a fresh transaction:

* success: SENT with ``tx_hash``, daily send totals updated, and an
  internally settled swap order completed;
* refusal: FAILED, allocations reversed, and any linked swap order failed;
* unknown outcome (timeout, transport error): the order stays in SENDING
  with ``blocked_reason="send_outcome_unknown"`` and keeps its allocations,
  since the payout may have been broadcast. An operator settles it.
"""
from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Optional

from sqlmodel import Session, select

from common.audit import AuditAction, log_event
from common.datetime import utcnow
from inventory_ledger.allocator import reverse_allocation
from inventory_ledger.ledger import btc_to_sats
from treasury_domain.db import SessionFactory
from treasury_domain.errors import SignerError, SignerUnavailable
from treasury_domain.order_models import (
    CustomerSwapOrder,
    DailyBtcSend,
    FulfillmentOrder,
    FulfillmentStatus,
    FundingSource,
    SwapOrderStatus,
)
from treasury_observability import metrics as met
from treasury_orchestrator.controls import OperationalControls

from .providers.base import SignerProvider
from .state_machine import set_blocked_reason, transition

__all__ = [
    "DAILY_LIMIT_REASON",
    "SEND_UNKNOWN_REASON",
    "dispatch_order",
    "record_daily_send",
    "sent_today_sats",
]

logger = logging.getLogger(__name__)

DAILY_LIMIT_REASON = "daily_limit_reached"
SEND_UNKNOWN_REASON = "send_outcome_unknown"

SENT = "sent"
FAILED = "failed"
DEFERRED = "deferred"
SKIPPED = "skipped"
UNKNOWN = "unknown"


def sent_today_sats(session: Session, day: date) -> int:
    row = session.exec(select(DailyBtcSend).where(DailyBtcSend.send_date == day)).first()
    return row.total_sats if row else 0


def record_daily_send(session: Session, day: date, sats: int) -> DailyBtcSend:
    row = session.exec(select(DailyBtcSend).where(DailyBtcSend.send_date == day)).first()
    if row is None:
        row = DailyBtcSend(send_date=day, total_sats=0, transaction_count=0)
    row.total_sats += sats
    row.transaction_count += 1
    row.updated_at = utcnow()
    session.add(row)
    return row


def _lock_order(session: Session, order_id: str) -> Optional[FulfillmentOrder]:
    return session.exec(
        select(FulfillmentOrder).where(FulfillmentOrder.id == order_id).with_for_update()
    ).first()


def _internal_swap(session: Session, order: FulfillmentOrder) -> Optional[CustomerSwapOrder]:
    swap = _linked_swap(session, order)
    if swap is None or swap.funding_source != FundingSource.CUSTODIAL_BALANCE:
        return None
    return swap


def _linked_swap(session: Session, order: FulfillmentOrder) -> Optional[CustomerSwapOrder]:
    if not order.swap_order_id:
        return None
    return session.get(CustomerSwapOrder, order.swap_order_id)


def _fail_linked_swap(session: Session, order: FulfillmentOrder) -> None:
    swap = _linked_swap(session, order)
    if swap is None or swap.status not in (SwapOrderStatus.PENDING, SwapOrderStatus.PROCESSING):
        return
    swap.status = SwapOrderStatus.FAILED
    swap.failed_reason = "btc_send_failed"
    swap.inventory_allocated = False
    swap.updated_at = utcnow()
    session.add(swap)
    log_event(
        session,
        event_id=f"swap:{swap.id}:failed",
        action=AuditAction.SWAP_ORDER_FAILED,
        entity_type="customer_swap_order",
        entity_id=swap.id,
        details={"order_id": swap.order_id, "fulfillment_id": order.id, "reason": swap.failed_reason},
    )


def _mark_outcome_unknown(session_factory: SessionFactory, order_id: str) -> None:
    # allocations stay put; the coins may already be on their way
    with session_factory() as session:
        order = _lock_order(session, order_id)
        if order is not None and set_blocked_reason(order, SEND_UNKNOWN_REASON):
            session.add(order)
            session.commit()


def _observe_send(provider: str, outcome: str, t0: float) -> None:
    met.signer_send_latency_seconds.labels(provider=provider, outcome=outcome).observe(
        time.perf_counter() - t0
    )


async def dispatch_order(
    session_factory: SessionFactory,
    order_id: str,
    signer: SignerProvider,
    *,
    controls: OperationalControls,
    now: Optional[datetime] = None,
) -> str:
    """Send one READY_TO_SEND order; returns sent / failed / unknown / deferred / skipped."""
    now = now or utcnow()

    with session_factory() as session:
        order = _lock_order(session, order_id)
        if order is None or order.status != FulfillmentStatus.READY_TO_SEND:
            return SKIPPED
        sats = btc_to_sats(order.btc_amount)
        if controls.daily_btc_send_limit is not None:
            limit = btc_to_sats(controls.daily_btc_send_limit)
            if sent_today_sats(session, now.date()) + sats > limit:
                if set_blocked_reason(order, DAILY_LIMIT_REASON):
                    session.add(order)
                    session.commit()
                logger.warning("daily BTC send limit reached; payout deferred", extra={"order_id": order_id})
                return DEFERRED
        transition(session, order, FulfillmentStatus.SENDING, now=now)
        destination = order.destination_address
        amount = order.btc_amount
        session.commit()

    provider = signer.__class__.__name__
    t0 = time.perf_counter()
    try:
        result = await signer.send_btc(destination, amount, order_id)
        tx_hash = result.get("tx_hash")
        if not tx_hash:
            raise SignerError("signer returned no transaction hash")
    except SignerUnavailable as exc:
        _observe_send(provider, "unknown", t0)
        logger.error("payout outcome unknown: %s", exc, extra={"order_id": order_id})
        _mark_outcome_unknown(session_factory, order_id)
        return UNKNOWN
    except SignerError as exc:
        _observe_send(provider, "error", t0)
        logger.error("payout failed: %s", exc, extra={"order_id": order_id})
        with session_factory() as session:
            try:
                order = _lock_order(session, order_id)
                reverse_allocation(session, order_id, reason="send_failed")
                transition(
                    session,
                    order,
                    FulfillmentStatus.FAILED,
                    reason=f"send_failed: {exc}"[:250],
                )
                _fail_linked_swap(session, order)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return FAILED
    except Exception:
        _observe_send(provider, "unknown", t0)
        logger.exception("payout outcome unknown", extra={"order_id": order_id})
        _mark_outcome_unknown(session_factory, order_id)
        return UNKNOWN

    _observe_send(provider, "ok", t0)
    with session_factory() as session:
        try:
            order = _lock_order(session, order_id)
            order.tx_hash = tx_hash
            order.signer_ref = result.get("provider_ref")
            transition(session, order, FulfillmentStatus.SENT, details={"tx_hash": tx_hash})
            record_daily_send(session, now.date(), sats)
            swap = _internal_swap(session, order)
            if swap is not None and swap.status == SwapOrderStatus.PENDING:
                swap.status = SwapOrderStatus.COMPLETED
                swap.completed_at = utcnow()
                swap.updated_at = swap.completed_at
                session.add(swap)
                log_event(
                    session,
                    event_id=f"swap:{swap.id}:settled_internally",
                    action=AuditAction.SWAP_ORDER_SETTLED_INTERNALLY,
                    entity_type="customer_swap_order",
                    entity_id=swap.id,
                    details={"order_id": swap.order_id, "fulfillment_id": order.id, "btc_tx_hash": tx_hash},
                )
            session.commit()
        except Exception:
            session.rollback()
            logger.exception(
                "payout broadcast but not recorded; order left in SENDING",
                extra={"order_id": order_id, "tx_hash": tx_hash},
            )
            raise
    met.btc_sent_sats_total.inc(sats)
    logger.info("payout broadcast", extra={"order_id": order_id, "tx_hash": tx_hash})
    return SENT
