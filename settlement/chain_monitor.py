"""Chain monitor: applies Bitcoin confirmations to swap and fulfillment orders.

Thin async adapter around :func:`settlement.reconcile.reconcile`. It fetches
explorer data first, then writes each order update in its own transaction.
It never allocates inventory and never creates obligations.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from common.audit import AuditAction, log_event
from common.datetime import utcnow
from fulfillment.state_machine import transition
from integrations.chain.esplora_client import EsploraClient, EsploraTx
from inventory_ledger.ledger import get_active_wallet
from treasury_domain.db import SessionFactory
from treasury_domain.errors import ChainDataUnavailable
from treasury_domain.inventory_models import Chain
from treasury_domain.order_models import (
    CustomerSwapOrder,
    FulfillmentOrder,
    FulfillmentStatus,
    SwapOrderStatus,
    SwapOrderType,
)
from treasury_observability import metrics as met

from .reconcile import REQUIRED_CONFIRMATIONS, DepositMatch, PendingDeposit, confirmations_for, reconcile

__all__ = ["ChainMonitor", "MonitorReport"]

logger = logging.getLogger(__name__)


@dataclass
class MonitorReport:
    success: bool = True
    message: str = ""
    detected: int = 0
    completed_sells: int = 0
    completed_buys: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "detected": self.detected,
            "completed_sells": self.completed_sells,
            "completed_buys": self.completed_buys,
            "errors": list(self.errors),
        }


class ChainMonitor:
    def __init__(
        self,
        esplora: EsploraClient,
        session_factory: SessionFactory,
        *,
        required_confirmations: int = REQUIRED_CONFIRMATIONS,
        batch_limit: int = 100,
    ):
        self._esplora = esplora
        self._session_factory = session_factory
        self._required = required_confirmations
        self._batch_limit = batch_limit

    async def run_once(self) -> MonitorReport:
        report = MonitorReport()

        with self._session_factory() as session:
            wallet = get_active_wallet(session, Chain.BTC)
            treasury_address = wallet.address if wallet else None
            pending = [
                PendingDeposit(o.order_id, o.btc_amount, o.source_address)
                for o in session.exec(
                    select(CustomerSwapOrder)
                    .where(
                        CustomerSwapOrder.order_type == SwapOrderType.SELL_BTC,
                        CustomerSwapOrder.status == SwapOrderStatus.PENDING,
                        CustomerSwapOrder.tx_hash.is_(None),
                    )
                    .order_by(CustomerSwapOrder.created_at, CustomerSwapOrder.id)
                    .limit(self._batch_limit)
                ).all()
            ]
            processing_sells = session.exec(
                select(CustomerSwapOrder.order_id, CustomerSwapOrder.tx_hash).where(
                    CustomerSwapOrder.order_type == SwapOrderType.SELL_BTC,
                    CustomerSwapOrder.status == SwapOrderStatus.PROCESSING,
                    CustomerSwapOrder.tx_hash.is_not(None),
                )
            ).all()
            sent_orders = session.exec(
                select(FulfillmentOrder.id, FulfillmentOrder.tx_hash).where(
                    FulfillmentOrder.status == FulfillmentStatus.SENT,
                    FulfillmentOrder.tx_hash.is_not(None),
                )
            ).all()
            used = set(session.exec(select(CustomerSwapOrder.tx_hash).where(CustomerSwapOrder.tx_hash.is_not(None))).all())

        if not treasury_address:
            report.success = False
            report.message = "Treasury BTC address not configured"
            logger.warning(report.message)
            return report

        try:
            tip = await self._esplora.tip_height()
            history = await self._esplora.address_txs(treasury_address) if (pending or processing_sells) else []
        except ChainDataUnavailable as exc:
            report.success = False
            report.message = f"Chain data unavailable: {exc}"
            logger.warning(report.message)
            return report
        by_txid = {tx.txid: tx for tx in history}

        for order_ref, txid in processing_sells:
            tx = by_txid.get(txid) or await self._safe_tx(txid, report)
            if tx is not None and confirmations_for(tx, tip) >= self._required:
                self._complete_sell(order_ref, txid, confirmations_for(tx, tip), report)

        for match in reconcile(
            pending,
            history,
            treasury_address,
            tip_height=tip,
            used_tx_hashes=used,
            required_confirmations=self._required,
        ):
            self._apply_deposit(match, report)

        for order_id, txid in sent_orders:
            tx = await self._safe_tx(txid, report)
            if tx is not None and confirmations_for(tx, tip) >= self._required:
                self._complete_fulfillment(order_id, txid, confirmations_for(tx, tip), report)

        report.message = (
            f"Detected {report.detected} deposits, completed {report.completed_sells} sells "
            f"and {report.completed_buys} buys"
        )
        logger.info(report.message)
        return report

    async def _safe_tx(self, txid: str, report: MonitorReport) -> Optional[EsploraTx]:
        try:
            return await self._esplora.tx(txid)
        except ChainDataUnavailable as exc:
            report.errors.append(f"{txid}: {exc}")
            return None

    # ------------------------------------------------------------------
    # per-order writes
    # ------------------------------------------------------------------

    def _apply_deposit(self, match: DepositMatch, report: MonitorReport) -> None:
        with self._session_factory() as session:
            try:
                order = session.exec(
                    select(CustomerSwapOrder)
                    .where(CustomerSwapOrder.order_id == match.order_id)
                    .with_for_update()
                ).first()
                if order is None or order.status != SwapOrderStatus.PENDING or order.tx_hash:
                    return
                now = utcnow()
                order.tx_hash = match.txid
                order.updated_at = now
                details = {
                    "tx_hash": match.txid,
                    "amount_sats": match.amount_sats,
                    "sender": match.sender,
                    "confirmations": match.confirmations,
                }
                log_event(
                    session,
                    event_id=f"swap:{order.id}:deposit:{match.txid}",
                    action=AuditAction.SELL_BTC_PAYMENT_DETECTED,
                    entity_type="customer_swap_order",
                    entity_id=order.order_id,
                    details=details,
                )
                if match.confirmed:
                    order.status = SwapOrderStatus.COMPLETED
                    order.completed_at = now
                    log_event(
                        session,
                        event_id=f"swap:{order.id}:completed",
                        action=AuditAction.SELL_BTC_ORDER_COMPLETED,
                        entity_type="customer_swap_order",
                        entity_id=order.order_id,
                        details=details,
                    )
                else:
                    order.status = SwapOrderStatus.PROCESSING
                session.add(order)
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning("deposit already claimed by another order", extra={"tx_hash": match.txid})
                return
            except Exception as exc:
                session.rollback()
                logger.exception("failed to apply deposit", extra={"order_id": match.order_id})
                report.errors.append(f"{match.order_id}: {exc}")
                return
        report.detected += 1
        met.chain_monitor_events_total.labels(kind="sell_detected").inc()
        if match.confirmed:
            report.completed_sells += 1
            met.chain_monitor_events_total.labels(kind="sell_completed").inc()

    def _complete_sell(self, order_ref: str, txid: str, confirmations: int, report: MonitorReport) -> None:
        with self._session_factory() as session:
            try:
                order = session.exec(
                    select(CustomerSwapOrder).where(CustomerSwapOrder.order_id == order_ref).with_for_update()
                ).first()
                if order is None or order.status != SwapOrderStatus.PROCESSING:
                    return
                order.status = SwapOrderStatus.COMPLETED
                order.completed_at = order.updated_at = utcnow()
                session.add(order)
                log_event(
                    session,
                    event_id=f"swap:{order.id}:completed",
                    action=AuditAction.SELL_BTC_ORDER_COMPLETED,
                    entity_type="customer_swap_order",
                    entity_id=order.order_id,
                    details={"tx_hash": txid, "confirmations": confirmations},
                )
                session.commit()
            except Exception as exc:
                session.rollback()
                logger.exception("failed to complete sell order", extra={"order_id": order_ref})
                report.errors.append(f"{order_ref}: {exc}")
                return
        report.completed_sells += 1
        met.chain_monitor_events_total.labels(kind="sell_completed").inc()

    def _complete_fulfillment(self, order_id: str, txid: str, confirmations: int, report: MonitorReport) -> None:
        with self._session_factory() as session:
            try:
                order = session.exec(
                    select(FulfillmentOrder).where(FulfillmentOrder.id == order_id).with_for_update()
                ).first()
                if order is None or order.status != FulfillmentStatus.SENT:
                    return
                transition(
                    session,
                    order,
                    FulfillmentStatus.COMPLETED,
                    details={"tx_hash": txid, "confirmations": confirmations},
                )
                swap = session.get(CustomerSwapOrder, order.swap_order_id) if order.swap_order_id else None
                if swap is not None and swap.status == SwapOrderStatus.PROCESSING:
                    swap.status = SwapOrderStatus.COMPLETED
                    swap.completed_at = swap.updated_at = utcnow()
                    session.add(swap)
                    log_event(
                        session,
                        event_id=f"swap:{swap.id}:completed",
                        action=AuditAction.BUY_BTC_ORDER_COMPLETED,
                        entity_type="customer_swap_order",
                        entity_id=swap.order_id,
                        details={"fulfillment_id": order.id, "btc_tx_hash": txid, "confirmations": confirmations},
                    )
                session.commit()
            except Exception as exc:
                session.rollback()
                logger.exception("failed to complete fulfillment", extra={"order_id": order_id})
                report.errors.append(f"{order_id}: {exc}")
                return
        report.completed_buys += 1
        met.chain_monitor_events_total.labels(kind="buy_completed").inc()
