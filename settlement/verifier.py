"""On-chain USDC payment verification for BUY_BTC swap orders.

A transfer is accepted only when all of the following hold:

* its hash has never been attached to any order (anti-replay);
* the order is a PENDING buy funded by an on-chain USDC payment;
* a USDC transfer in that transaction pays the expected recipient;
* the amount is within 0.1 % of the stored order amount;
* it has at least ``min_confirmations`` blocks on top.

Acceptance moves the swap order to PROCESSING and opens the BUY_ORDER
fulfillment in the same transaction. Every attempt is audited, accepted or
not.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import ulid
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from common.audit import AuditAction, log_event
from common.datetime import utcnow
from fulfillment.state_machine import create_fulfillment_order
from integrations.chain import USDC_CONTRACT
from integrations.chain.evm_client import Erc20Transfer, EvmRpcClient, RpcError
from inventory_ledger.ledger import get_active_wallet
from treasury_domain.db import SessionFactory
from treasury_domain.errors import ChainDataUnavailable, OrderNotFound
from treasury_domain.inventory_models import Chain
from treasury_domain.order_models import (
    CustomerSwapOrder,
    FulfillmentOrder,
    FulfillmentType,
    FundingSource,
    OrderKycStatus,
    SwapOrderStatus,
    SwapOrderType,
)
from treasury_observability import metrics as met

__all__ = [
    "AMOUNT_TOLERANCE",
    "MIN_CONFIRMATIONS",
    "TransferVerifier",
    "VerificationResult",
    "amount_matches",
]

logger = logging.getLogger(__name__)

MIN_CONFIRMATIONS = 12
AMOUNT_TOLERANCE = Decimal("0.001")  # 0.1 %

ALREADY_PROCESSED = "Transaction already processed"
NOT_USDC_FUNDED = "Order is not a USDC-funded buy"


def amount_matches(actual: Decimal, expected: Decimal, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    return abs(actual - expected) <= expected * tolerance


def _refusal(order: CustomerSwapOrder) -> Optional[str]:
    """Why *order* cannot be settled by an on-chain USDC payment, if it cannot."""
    if order.status != SwapOrderStatus.PENDING:
        return f"Order already in status: {order.status.value}"
    if order.order_type != SwapOrderType.BUY_BTC or order.funding_source != FundingSource.ONCHAIN_USDC:
        return NOT_USDC_FUNDED
    return None


@dataclass
class VerificationResult:
    verified: bool
    confirmations: int = 0
    required_confirmations: int = MIN_CONFIRMATIONS
    actual_amount: Optional[Decimal] = None
    from_address: Optional[str] = None
    error: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None
    existing_order_id: Optional[str] = None
    replay: bool = False

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.actual_amount is not None:
            data["actual_amount"] = str(self.actual_amount)
        return data


class TransferVerifier:
    def __init__(
        self,
        rpc: EvmRpcClient,
        session_factory: SessionFactory,
        *,
        min_confirmations: int = MIN_CONFIRMATIONS,
        usdc_contract: str = USDC_CONTRACT,
    ):
        self._rpc = rpc
        self._session_factory = session_factory
        self._min_confirmations = min_confirmations
        self._contract = usdc_contract.lower()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _find_replay(session: Session, tx_hash: str) -> Optional[str]:
        swap_ref = session.exec(
            select(CustomerSwapOrder.order_id).where(func.lower(CustomerSwapOrder.tx_hash) == tx_hash)
        ).first()
        if swap_ref:
            return swap_ref
        return session.exec(
            select(FulfillmentOrder.id).where(func.lower(FulfillmentOrder.tx_hash) == tx_hash)
        ).first()

    def _audit(
        self,
        session: Session,
        *,
        tx_hash: str,
        order_ref: str,
        expected_amount: Decimal,
        result: VerificationResult,
    ) -> None:
        log_event(
            session,
            event_id=f"usdc_verification:{tx_hash}:{ulid.new()}",
            action=AuditAction.USDC_TRANSFER_VERIFICATION,
            entity_type="customer_swap_order",
            entity_id=order_ref,
            details={
                "tx_hash": tx_hash,
                "expected_amount": expected_amount,
                "actual_amount": result.actual_amount,
                "confirmations": result.confirmations,
                "required_confirmations": self._min_confirmations,
                "verified": result.verified,
                "from_address": result.from_address,
                "error": result.error,
            },
        )

    def _record_attempt(self, tx_hash: str, order_ref: str, expected: Decimal, result: VerificationResult) -> VerificationResult:
        with self._session_factory() as session:
            self._audit(session, tx_hash=tx_hash, order_ref=order_ref, expected_amount=expected, result=result)
            session.commit()
        if result.replay:
            outcome = "replay"
        elif result.verified:
            outcome = "verified"
        elif result.error:
            outcome = "mismatch"
        else:
            outcome = "pending"
        met.usdc_verifications_total.labels(outcome=outcome).inc()
        return result

    async def _lookup_transfer(self, tx_hash: str, recipient: str) -> tuple[Optional[Erc20Transfer], Optional[str]]:
        """Return the matching transfer or an error explaining why there is none."""
        for transfer in await self._rpc.incoming_transfers(recipient, self._contract):
            if transfer.tx_hash == tx_hash and transfer.to_address == recipient:
                return transfer, None

        receipt = await self._rpc.transaction_receipt(tx_hash)
        if receipt is None:
            return None, "Transaction not found"
        if not receipt.succeeded:
            return None, "Transaction failed"
        for transfer in receipt.erc20_transfers(self._contract):
            if transfer.to_address == recipient:
                return transfer, None
        return None, "USDC transfer not found in transaction"

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    async def verify(
        self,
        tx_hash: str,
        order_id: str,
        expected_amount: Decimal | str,
        expected_recipient: str,
    ) -> VerificationResult:
        """Verify a customer's USDC payment for swap order ``order_id``.

        Raises ``ValueError`` for malformed input and :class:`OrderNotFound`
        for an unknown order; every other outcome is a result.
        """
        tx_hash = (tx_hash or "").strip().lower()
        recipient = (expected_recipient or "").strip().lower()
        if not tx_hash or not order_id or not recipient:
            raise ValueError("tx_hash, order_id and expected_recipient are required")
        try:
            expected = Decimal(str(expected_amount))
        except InvalidOperation as exc:
            raise ValueError(f"invalid expected amount: {expected_amount!r}") from exc
        if expected <= 0:
            raise ValueError("expected amount must be positive")

        base = dict(required_confirmations=self._min_confirmations)

        with self._session_factory() as session:
            existing = self._find_replay(session, tx_hash)
            if existing:
                logger.warning(
                    "replayed transaction hash rejected (already on %s)", existing, extra={"tx_hash": tx_hash}
                )
                return self._record_attempt(
                    tx_hash,
                    order_id,
                    expected,
                    VerificationResult(
                        verified=False, error=ALREADY_PROCESSED, existing_order_id=existing, replay=True, **base
                    ),
                )

            order = session.exec(
                select(CustomerSwapOrder).where(CustomerSwapOrder.order_id == order_id)
            ).first()
            if order is None:
                raise OrderNotFound(f"swap order {order_id} not found")
            refusal = _refusal(order)
            if refusal is not None:
                return self._record_attempt(
                    tx_hash,
                    order_id,
                    expected,
                    VerificationResult(verified=False, error=refusal, status=order.status.value, **base),
                )
            order_amount = order.usdc_amount
            if not amount_matches(expected, order_amount):
                logger.warning(
                    "expected amount %s does not match order amount %s",
                    expected,
                    order.usdc_amount,
                    extra={"order_id": order_id, "tx_hash": tx_hash},
                )
                return self._record_attempt(
                    tx_hash,
                    order_id,
                    expected,
                    VerificationResult(verified=False, error="Expected amount does not match order", **base),
                )
            treasury = get_active_wallet(session, Chain.ETH)
            if treasury is not None and treasury.address.lower() != recipient:
                logger.warning("recipient is not the treasury wallet", extra={"order_id": order_id, "tx_hash": tx_hash})
                return self._record_attempt(
                    tx_hash,
                    order_id,
                    expected,
                    VerificationResult(verified=False, error="Recipient is not the treasury wallet", **base),
                )

        # chain I/O happens with no session open
        try:
            transfer, lookup_error = await self._lookup_transfer(tx_hash, recipient)
            current_block = await self._rpc.block_number() if transfer else None
        except RpcError as exc:
            return self._record_attempt(
                tx_hash, order_id, expected, VerificationResult(verified=False, error=str(exc), **base)
            )
        except ChainDataUnavailable as exc:
            logger.warning("chain data unavailable: %s", exc, extra={"tx_hash": tx_hash})
            return self._record_attempt(
                tx_hash, order_id, expected, VerificationResult(verified=False, error="Chain data unavailable", **base)
            )

        if transfer is None:
            return self._record_attempt(
                tx_hash, order_id, expected, VerificationResult(verified=False, error=lookup_error, **base)
            )

        confirmations = max(0, current_block - transfer.block_number) if transfer.block_number is not None else 0
        result = VerificationResult(
            verified=False,
            confirmations=confirmations,
            actual_amount=transfer.value,
            from_address=transfer.from_address,
            **base,
        )
        # the order is the source of truth; the caller figure only gates the lookup
        if not amount_matches(transfer.value, order_amount):
            result.error = f"Amount mismatch: expected {order_amount}, got {transfer.value}"
            logger.warning(result.error, extra={"order_id": order_id, "tx_hash": tx_hash})
            return self._record_attempt(tx_hash, order_id, expected, result)
        if confirmations < self._min_confirmations:
            result.message = f"Waiting for confirmations: {confirmations}/{self._min_confirmations}"
            return self._record_attempt(tx_hash, order_id, expected, result)

        return self._accept(tx_hash, order_id, expected, result)

    def _accept(self, tx_hash: str, order_ref: str, expected: Decimal, result: VerificationResult) -> VerificationResult:
        with self._session_factory() as session:
            try:
                order = session.exec(
                    select(CustomerSwapOrder)
                    .where(CustomerSwapOrder.order_id == order_ref)
                    .with_for_update()
                ).first()
                existing = self._find_replay(session, tx_hash)
                refusal = "Order not found" if order is None else _refusal(order)
                if existing or refusal is not None:
                    session.rollback()
                    result.verified = False
                    if existing:
                        result.error, result.existing_order_id, result.replay = ALREADY_PROCESSED, existing, True
                    else:
                        result.error = refusal
                    return self._record_attempt(tx_hash, order_ref, expected, result)

                now = utcnow()
                order.tx_hash = tx_hash
                order.source_address = result.from_address
                order.status = SwapOrderStatus.PROCESSING
                order.updated_at = now
                session.add(order)
                create_fulfillment_order(
                    session,
                    order_type=FulfillmentType.BUY_ORDER,
                    usd_value=order.usdc_amount,
                    destination_address=order.destination_address,
                    customer_id=order.customer_id,
                    btc_amount=order.btc_amount,
                    btc_price_used=order.btc_price_at_order,
                    swap_order_id=order.id,
                    kyc_status=OrderKycStatus.APPROVED,
                )
                result.verified = True
                result.status = SwapOrderStatus.PROCESSING.value
                result.message = "Payment verified"
                self._audit(session, tx_hash=tx_hash, order_ref=order_ref, expected_amount=expected, result=result)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                result.verified = False
                result.status = None
                existing = self._find_replay(session, tx_hash)
                if existing:
                    # unique tx_hash lost a race with a concurrent verification
                    result.error, result.existing_order_id, result.replay = ALREADY_PROCESSED, existing, True
                else:
                    logger.error("settlement rejected by the database: %s", exc, extra={"order_id": order_ref})
                    result.error = "Order could not be settled"
                return self._record_attempt(tx_hash, order_ref, expected, result)

        met.usdc_verifications_total.labels(outcome="verified").inc()
        logger.info("USDC payment verified", extra={"order_id": order_ref, "tx_hash": tx_hash})
        return result
