"""Periodic queue run that moves fulfillment obligations towards SENT.

A run:

1. loads the operational controls once (and stops if payouts are paused);
2. seeds a running counter with eligible inventory;
3. advances existing orders through the KYC, destination and inventory gates;
4. opens fulfillments for internally funded BUY_BTC swap orders;
5. broadcasts READY_TO_SEND orders through the custody signer.

Each order is handled in its own transaction; one order failing is logged,
rolled back and reported without affecting the rest of the run. Running it
twice with nothing new to do changes nothing.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import ulid
from sqlmodel import Session, select

from common.audit import AuditAction, log_event
from common.datetime import utcnow
from integrations.price_oracle import PriceOracle, usd_to_btc
from inventory_ledger.ledger import get_inventory_stats
from treasury_domain.db import SessionFactory
from treasury_domain.order_models import (
    CustomerSwapOrder,
    FulfillmentOrder,
    FulfillmentStatus,
    FulfillmentType,
    FundingSource,
    KycStatus,
    OrderKycStatus,
    SwapOrderStatus,
    SwapOrderType,
)
from treasury_observability import metrics as met
from treasury_orchestrator.controls import OperationalControls, load_controls

from . import dispatcher
from .kyc import KycDirectory, ProfileKycDirectory
from .providers.base import SignerProvider
from .state_machine import (
    apply_destination_gate,
    apply_inventory_gate,
    apply_kyc_gate,
    create_fulfillment_order,
    set_blocked_reason,
    transition,
)

__all__ = ["QueueProcessor", "RunReport", "RunResult"]

logger = logging.getLogger(__name__)

PAUSED_MESSAGE = "All payouts are paused"

_OPEN_STATES = (
    FulfillmentStatus.SUBMITTED,
    FulfillmentStatus.KYC_PENDING,
    FulfillmentStatus.WAITING_INVENTORY,
)


@dataclass
class RunResult:
    order_id: str
    status: str
    action: str

    def as_dict(self) -> Dict[str, str]:
        return {"orderId": self.order_id, "status": self.status, "action": self.action}


@dataclass
class RunReport:
    success: bool = True
    processed: int = 0
    allocated: int = 0
    sent: int = 0
    message: str = ""
    results: List[RunResult] = field(default_factory=list)
    eligible_btc: Decimal = Decimal("0")
    low_inventory: bool = False
    run_id: str = ""

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["results"] = [r.as_dict() for r in self.results]
        data["inventory"] = {"eligible_btc": str(self.eligible_btc)}
        data.pop("eligible_btc")
        return data


class QueueProcessor:
    def __init__(
        self,
        session_factory: SessionFactory,
        signer: SignerProvider,
        *,
        kyc_factory: Callable[[Session], KycDirectory] = ProfileKycDirectory,
        price_oracle: Optional[PriceOracle] = None,
        batch_limit: int = 50,
        swap_batch_limit: int = 20,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._signer = signer
        self._kyc_factory = kyc_factory
        self._price_oracle = price_oracle
        self._batch_limit = batch_limit
        self._swap_batch_limit = swap_batch_limit
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run_once(self) -> RunReport:
        t0 = time.perf_counter()
        report = RunReport(run_id=str(ulid.new()))
        now = self._clock()

        with self._session_factory() as session:
            controls = load_controls(session)
            if controls.payouts_paused:
                report.message = PAUSED_MESSAGE
                met.queue_runs_total.labels(outcome="paused").inc()
                logger.info(PAUSED_MESSAGE, extra={"run_id": report.run_id})
                return report
            remaining = get_inventory_stats(session, now).eligible_btc

        remaining = await self._advance_open_orders(report, remaining, now)
        remaining = await self._open_internal_swaps(report, remaining, now)
        await self._send_ready_orders(report, controls, now)

        with self._session_factory() as session:
            report.eligible_btc = get_inventory_stats(session, self._clock()).eligible_btc
        if report.eligible_btc < controls.low_inventory_threshold_btc:
            report.low_inventory = True
            met.low_inventory_alerts_total.inc()
            logger.warning(
                "low BTC inventory: eligible=%s threshold=%s",
                report.eligible_btc,
                controls.low_inventory_threshold_btc,
                extra={"run_id": report.run_id},
            )

        report.message = (
            f"Processed {report.processed} orders, allocated {report.allocated}, sent {report.sent}"
        )
        met.queue_runs_total.labels(outcome="ok").inc()
        met.queue_run_latency_seconds.observe(time.perf_counter() - t0)
        logger.info(report.message, extra={"run_id": report.run_id})
        return report

    # ------------------------------------------------------------------
    # Phase: existing orders
    # ------------------------------------------------------------------

    async def _price(self) -> Optional[Decimal]:
        if self._price_oracle is None:
            return None
        quote = await self._price_oracle.btc_usd()
        return quote.price

    async def _advance_open_orders(self, report: RunReport, remaining: Decimal, now: datetime) -> Decimal:
        with self._session_factory() as session:
            rows = session.exec(
                select(FulfillmentOrder.id, FulfillmentOrder.btc_amount)
                .where(FulfillmentOrder.status.in_(_OPEN_STATES))
                .order_by(FulfillmentOrder.created_at, FulfillmentOrder.id)
                .limit(self._batch_limit)
            ).all()

        price: Optional[Decimal] = None
        if any(btc_amount is None for _, btc_amount in rows):
            try:
                price = await self._price()
            except Exception:
                logger.exception("BTC price unavailable; unpriced orders wait for the next run")

        for order_id, _ in rows:
            with self._session_factory() as session:
                try:
                    remaining, result = self._advance_one(session, order_id, remaining, price, now)
                    session.commit()
                except Exception as exc:
                    session.rollback()
                    logger.exception("failed to advance order", extra={"order_id": order_id})
                    result = RunResult(order_id, "ERROR", f"error: {exc}")
            report.processed += 1
            report.results.append(result)
            if result.action == "allocated":
                report.allocated += 1
        return remaining

    def _advance_one(
        self,
        session: Session,
        order_id: str,
        remaining: Decimal,
        price: Optional[Decimal],
        now: datetime,
    ) -> tuple[Decimal, RunResult]:
        order = session.exec(
            select(FulfillmentOrder).where(FulfillmentOrder.id == order_id).with_for_update()
        ).first()
        if order is None or order.status not in _OPEN_STATES:
            return remaining, RunResult(order_id, "SKIPPED", "state changed")

        kyc = self._kyc_factory(session)
        if order.status == FulfillmentStatus.SUBMITTED:
            transition(session, order, FulfillmentStatus.KYC_PENDING)
        if not apply_kyc_gate(session, order, kyc):
            return remaining, RunResult(order.id, order.status.value, order.blocked_reason or "kyc")
        if not apply_destination_gate(session, order, kyc):
            return remaining, RunResult(order.id, order.status.value, order.blocked_reason)

        if order.btc_amount is None:
            if price is None:
                set_blocked_reason(order, "price_unavailable")
                session.add(order)
                return remaining, RunResult(order.id, order.status.value, "price_unavailable")
            order.btc_amount = usd_to_btc(order.usd_value, price)
            order.btc_price_used = price
            session.add(order)

        if order.btc_amount > remaining:
            if set_blocked_reason(order, "insufficient_inventory"):
                session.add(order)
            return remaining, RunResult(order.id, order.status.value, "waiting_inventory")

        result = apply_inventory_gate(session, order, now=now)
        if not result.ok:
            return remaining, RunResult(order.id, order.status.value, "waiting_inventory")
        return remaining - order.btc_amount, RunResult(order.id, order.status.value, "allocated")

    # ------------------------------------------------------------------
    # Phase: internally funded swaps
    # ------------------------------------------------------------------

    async def _open_internal_swaps(self, report: RunReport, remaining: Decimal, now: datetime) -> Decimal:
        with self._session_factory() as session:
            swap_ids = session.exec(
                select(CustomerSwapOrder.id)
                .where(
                    CustomerSwapOrder.order_type == SwapOrderType.BUY_BTC,
                    CustomerSwapOrder.status == SwapOrderStatus.PENDING,
                    CustomerSwapOrder.funding_source == FundingSource.CUSTODIAL_BALANCE,
                    CustomerSwapOrder.inventory_allocated == False,  # noqa: E712
                )
                .order_by(CustomerSwapOrder.created_at, CustomerSwapOrder.id)
                .limit(self._swap_batch_limit)
            ).all()

        for swap_id in swap_ids:
            with self._session_factory() as session:
                try:
                    remaining, result, committed = self._open_swap(session, swap_id, remaining, now)
                    if committed:
                        session.commit()
                    else:
                        # an unfinished swap keeps nothing but its blocked reason
                        session.rollback()
                except Exception as exc:
                    session.rollback()
                    logger.exception("failed to open swap fulfillment", extra={"order_id": swap_id})
                    result = RunResult(swap_id, "ERROR", f"error: {exc}")
            report.processed += 1
            report.results.append(result)
            if result.action == "allocated":
                report.allocated += 1
        return remaining

    def _open_swap(
        self, session: Session, swap_id: str, remaining: Decimal, now: datetime
    ) -> tuple[Decimal, RunResult, bool]:
        swap = session.exec(
            select(CustomerSwapOrder).where(CustomerSwapOrder.id == swap_id).with_for_update()
        ).first()
        if swap is None or swap.status != SwapOrderStatus.PENDING or swap.inventory_allocated:
            return remaining, RunResult(swap_id, "SKIPPED", "state changed"), False

        kyc = self._kyc_factory(session)
        if kyc.kyc_status(swap.customer_id) != KycStatus.APPROVED:
            changed = self._block_swap(session, swap, "kyc_pending")
            return remaining, RunResult(swap.order_id, swap.status.value, "kyc_pending"), changed
        destination = swap.destination_address or kyc.btc_address(swap.customer_id)
        if not destination:
            logger.warning("swap order has no BTC destination", extra={"order_id": swap.order_id})
            changed = self._block_swap(session, swap, "missing_destination_address")
            return remaining, RunResult(swap.order_id, swap.status.value, "missing_destination_address"), changed
        if swap.btc_amount > remaining:
            return remaining, RunResult(swap.order_id, swap.status.value, "waiting_inventory"), False

        order = create_fulfillment_order(
            session,
            order_type=FulfillmentType.BUY_ORDER,
            usd_value=swap.usdc_amount,
            destination_address=destination,
            customer_id=swap.customer_id,
            btc_amount=swap.btc_amount,
            btc_price_used=swap.btc_price_at_order,
            swap_order_id=swap.id,
            kyc_status=OrderKycStatus.APPROVED,
        )
        apply_kyc_gate(session, order, kyc)
        result = apply_inventory_gate(session, order, now=now)
        if not result.ok:
            return remaining, RunResult(swap.order_id, swap.status.value, "waiting_inventory"), False

        swap.inventory_allocated = True
        swap.blocked_reason = None
        swap.updated_at = utcnow()
        session.add(swap)
        return remaining - swap.btc_amount, RunResult(swap.order_id, swap.status.value, "allocated"), True

    @staticmethod
    def _block_swap(session: Session, swap: CustomerSwapOrder, reason: str) -> bool:
        """Record why *swap* cannot be opened; returns False when already recorded."""
        if swap.blocked_reason == reason:
            return False
        swap.blocked_reason = reason
        swap.updated_at = utcnow()
        session.add(swap)
        log_event(
            session,
            event_id=f"swap:{swap.id}:blocked:{reason}",
            action=AuditAction.SWAP_ORDER_BLOCKED,
            entity_type="customer_swap_order",
            entity_id=swap.id,
            details={"order_id": swap.order_id, "reason": reason},
        )
        return True

    # ------------------------------------------------------------------
    # Phase: broadcast
    # ------------------------------------------------------------------

    async def _send_ready_orders(self, report: RunReport, controls: OperationalControls, now: datetime) -> None:
        with self._session_factory() as session:
            order_ids = session.exec(
                select(FulfillmentOrder.id)
                .where(FulfillmentOrder.status == FulfillmentStatus.READY_TO_SEND)
                .order_by(FulfillmentOrder.created_at, FulfillmentOrder.id)
                .limit(self._batch_limit)
            ).all()

        for order_id in order_ids:
            try:
                outcome = await dispatcher.dispatch_order(
                    self._session_factory, order_id, self._signer, controls=controls, now=now
                )
            except Exception as exc:
                logger.exception("dispatch failed", extra={"order_id": order_id})
                report.results.append(RunResult(order_id, "ERROR", f"error: {exc}"))
                continue
            if outcome == dispatcher.SKIPPED:
                continue
            status = {
                dispatcher.SENT: FulfillmentStatus.SENT,
                dispatcher.FAILED: FulfillmentStatus.FAILED,
                dispatcher.UNKNOWN: FulfillmentStatus.SENDING,
                dispatcher.DEFERRED: FulfillmentStatus.READY_TO_SEND,
            }[outcome]
            report.results.append(RunResult(order_id, status.value, outcome))
            if outcome == dispatcher.SENT:
                report.sent += 1
