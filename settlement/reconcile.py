"""Pure matching of pending SELL_BTC orders against treasury address history.

All helpers are pure and deterministic so they can be unit-tested with
fixture transactions, with no explorer and no database.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import AbstractSet, Iterable, List, Optional, Sequence

from integrations.chain.esplora_client import EsploraTx
from inventory_ledger.ledger import btc_to_sats
from treasury_domain.inventory_models import sats_to_btc

__all__ = [
    "DEFAULT_TOLERANCE",
    "REQUIRED_CONFIRMATIONS",
    "DepositMatch",
    "PendingDeposit",
    "btc_to_sats",
    "confirmations_for",
    "reconcile",
    "sats_to_btc",
]

REQUIRED_CONFIRMATIONS = 3
DEFAULT_TOLERANCE = Decimal("0.01")  # 1 %


@dataclass(frozen=True)
class PendingDeposit:
    order_id: str
    btc_amount: Decimal
    source_address: Optional[str]


@dataclass(frozen=True)
class DepositMatch:
    order_id: str
    txid: str
    amount_sats: int
    sender: Optional[str]
    confirmations: int
    confirmed: bool


def confirmations_for(tx: EsploraTx, tip_height: Optional[int]) -> int:
    """Blocks including the one that mined *tx*; 0 while unconfirmed or unknown."""
    if not tx.confirmed or tx.block_height is None or tip_height is None:
        return 0
    return max(0, tip_height - tx.block_height + 1)


def _within(actual: int, expected: int, tolerance: Decimal) -> bool:
    return abs(Decimal(actual - expected)) <= Decimal(expected) * tolerance


def reconcile(
    pending_orders: Sequence[PendingDeposit],
    recent_txs: Iterable[EsploraTx],
    treasury_address: str,
    *,
    tip_height: Optional[int],
    used_tx_hashes: AbstractSet[str] = frozenset(),
    required_confirmations: int = REQUIRED_CONFIRMATIONS,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> List[DepositMatch]:
    """Match each pending order (in the given order) to at most one transaction.

    A transaction qualifies when one of its inputs is the order's declared
    source address and its outputs pay the treasury within ``tolerance`` of
    the expected amount. Transactions already attached to an order, or claimed
    by an earlier order in this pass, are skipped. Orders without a declared
    source address never match.
    """
    txs = [tx for tx in recent_txs if tx.txid and tx.txid not in used_tx_hashes]
    claimed: set[str] = set()
    matches: List[DepositMatch] = []
    for order in pending_orders:
        if not order.source_address:
            continue
        expected = btc_to_sats(order.btc_amount)
        if expected <= 0:
            continue
        for tx in txs:
            if tx.txid in claimed or order.source_address not in tx.input_addresses:
                continue
            received = tx.received_by(treasury_address)
            if received <= 0 or not _within(received, expected, tolerance):
                continue
            confirmations = confirmations_for(tx, tip_height)
            matches.append(
                DepositMatch(
                    order_id=order.order_id,
                    txid=tx.txid,
                    amount_sats=received,
                    sender=order.source_address,
                    confirmations=confirmations,
                    confirmed=confirmations >= required_confirmations,
                )
            )
            claimed.add(tx.txid)
            break
    return matches
