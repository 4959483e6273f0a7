"""Treasury inventory ledger: wallets, lot top-ups and inventory statistics."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from common.audit import ActorType, AuditAction, log_event
from common.datetime import utcnow
from treasury_domain.inventory_models import (
    SATS_PER_BTC,
    Chain,
    InventoryLot,
    InventorySource,
    LotAllocation,
    TreasuryWallet,
    sats_to_btc,
)
from treasury_observability import metrics as met

__all__ = [
    "InventoryStats",
    "btc_to_sats",
    "set_active_wallet",
    "get_active_wallet",
    "record_lot",
    "get_inventory_stats",
    "check_conservation",
    "ledger_balance_btc",
]

logger = logging.getLogger(__name__)

_SATOSHI = Decimal("0.00000001")


def btc_to_sats(amount: Decimal | str | int) -> int:
    """Convert a BTC amount to integer satoshis (half-up at the 8th decimal)."""
    btc = Decimal(str(amount)).quantize(_SATOSHI, rounding=ROUND_HALF_UP)
    return int(btc * SATS_PER_BTC)


@dataclass(slots=True)
class InventoryStats:
    total_btc: Decimal
    eligible_btc: Decimal
    locked_btc: Decimal
    eligible_lots_count: int
    locked_lots_count: int

    def as_dict(self) -> Dict[str, Any]:
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in asdict(self).items()}


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------

def get_active_wallet(session: Session, chain: Chain | str) -> Optional[TreasuryWallet]:
    return session.exec(
        select(TreasuryWallet)
        .where(TreasuryWallet.chain == Chain(chain), TreasuryWallet.is_active == True)  # noqa: E712
        .order_by(TreasuryWallet.updated_at.desc())
    ).first()


def set_active_wallet(
    session: Session,
    chain: Chain | str,
    address: str,
    *,
    label: Optional[str] = None,
    actor: str = "system",
) -> TreasuryWallet:
    """Activate *address* for *chain*, deactivating any other wallet on that chain.

    Does not commit; the deactivation and activation land in the caller's
    transaction together so readers never observe two active wallets.
    """
    chain = Chain(chain)
    address = address.strip()
    if not address:
        raise ValueError("wallet address is required")

    now = utcnow()
    wallets = session.exec(select(TreasuryWallet).where(TreasuryWallet.chain == chain)).all()
    target = None
    for w in wallets:
        if w.address == address:
            target = w
        elif w.is_active:
            w.is_active = False
            w.updated_at = now
            session.add(w)
    if target is None:
        target = TreasuryWallet(chain=chain, address=address, label=label)
    target.is_active = True
    target.updated_at = now
    if label:
        target.label = label
    session.add(target)
    session.flush()
    log_event(
        session,
        action=AuditAction.TREASURY_WALLET_ACTIVATED,
        entity_type="treasury_wallet",
        entity_id=str(target.id),
        actor=actor,
        actor_type=ActorType.ADMIN if actor != "system" else ActorType.SYSTEM,
        details={"chain": chain.value, "address": address},
    )
    return target


# ---------------------------------------------------------------------------
# Lots
# ---------------------------------------------------------------------------

def record_lot(
    session: Session,
    amount_btc: Decimal | str,
    *,
    hold_duration: timedelta,
    received_at: Optional[datetime] = None,
    source: InventorySource | str = InventorySource.MANUAL_TOPUP,
    reference_id: Optional[str] = None,
    notes: Optional[str] = None,
    created_by: Optional[str] = None,
    wallet: Optional[TreasuryWallet] = None,
) -> InventoryLot:
    """Record a treasury top-up as a new lot. Does not commit.

    The lot becomes eligible for allocation once ``hold_duration`` has elapsed
    after ``received_at``.
    """
    sats = btc_to_sats(amount_btc)
    if sats <= 0:
        raise ValueError("lot amount must be positive")
    received_at = received_at or utcnow()
    if wallet is None:
        wallet = get_active_wallet(session, Chain.BTC)

    lot = InventoryLot(
        treasury_wallet_id=wallet.id if wallet else None,
        amount_total_sats=sats,
        amount_available_sats=sats,
        received_at=received_at,
        eligible_at=received_at + hold_duration,
        source=InventorySource(source),
        reference_id=reference_id,
        notes=notes,
        created_by=created_by,
    )
    session.add(lot)
    session.flush()
    log_event(
        session,
        event_id=f"inventory_lot:{lot.id}:recorded",
        action=AuditAction.INVENTORY_LOT_RECORDED,
        entity_type="inventory_lot",
        entity_id=str(lot.id),
        actor=created_by or "system",
        actor_type=ActorType.ADMIN if created_by else ActorType.SYSTEM,
        details={
            "amount_btc": lot.amount_total,
            "eligible_at": lot.eligible_at.isoformat(),
            "source": lot.source.value,
            "reference_id": reference_id,
        },
    )
    logger.info(
        "inventory lot recorded: %s BTC eligible at %s",
        lot.amount_total,
        lot.eligible_at.isoformat(),
        extra={"lot_id": lot.id},
    )
    return lot


def get_inventory_stats(session: Session, now: Optional[datetime] = None) -> InventoryStats:
    """Split available inventory into eligible and still-maturing buckets."""
    now = now or utcnow()
    lots = session.exec(
        select(InventoryLot.amount_available_sats, InventoryLot.eligible_at).where(
            InventoryLot.amount_available_sats > 0
        )
    ).all()

    eligible_sats = locked_sats = 0
    eligible_count = locked_count = 0
    for available, eligible_at in lots:
        if eligible_at <= now:
            eligible_sats += available
            eligible_count += 1
        else:
            locked_sats += available
            locked_count += 1

    met.inventory_btc.labels(bucket="eligible").set(eligible_sats / SATS_PER_BTC)
    met.inventory_btc.labels(bucket="locked").set(locked_sats / SATS_PER_BTC)
    return InventoryStats(
        total_btc=sats_to_btc(eligible_sats + locked_sats),
        eligible_btc=sats_to_btc(eligible_sats),
        locked_btc=sats_to_btc(locked_sats),
        eligible_lots_count=eligible_count,
        locked_lots_count=locked_count,
    )


def check_conservation(session: Session, lot_id: int) -> bool:
    """True when ``available + sum(active allocations) == total`` for the lot."""
    lot = session.get(InventoryLot, lot_id)
    if lot is None:
        raise LookupError(f"lot {lot_id} not found")
    allocated = session.exec(
        select(func.coalesce(func.sum(LotAllocation.amount_sats), 0)).where(
            LotAllocation.lot_id == lot_id,
            LotAllocation.is_reversed == False,  # noqa: E712
        )
    ).one()
    return lot.amount_available_sats + int(allocated) == lot.amount_total_sats


def ledger_balance_btc(session: Session) -> Decimal:
    """BTC the ledger believes is still held in treasury (all lots, any maturity)."""
    total = session.exec(
        select(func.coalesce(func.sum(InventoryLot.amount_available_sats), 0))
    ).one()
    return sats_to_btc(int(total))
