"""Treasury balance reconciliation: on-chain balance versus the ledger."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlmodel import Session

from common.audit import ActorType, AuditAction, log_event
from common.datetime import utcnow
from integrations.chain.esplora_client import EsploraClient
from inventory_ledger.ledger import get_active_wallet, ledger_balance_btc
from treasury_domain.db import SessionFactory
from treasury_domain.inventory_models import Chain, sats_to_btc
from treasury_domain.order_models import ReconciliationStatus, TreasuryReconciliation
from treasury_observability import metrics as met

__all__ = [
    "MATCH_THRESHOLD_PCT",
    "discrepancy_pct",
    "reconcile_btc_treasury",
    "record_reconciliation",
    "resolve_reconciliation",
]

logger = logging.getLogger(__name__)

MATCH_THRESHOLD_PCT = Decimal("0.01")


def discrepancy_pct(onchain: Decimal, database: Decimal) -> Decimal:
    """Absolute discrepancy as a percentage of the ledger balance."""
    diff = abs(onchain - database)
    if database == 0:
        return Decimal("0") if diff == 0 else Decimal("100")
    return (diff / database * 100).quantize(Decimal("0.000001"))


def record_reconciliation(
    session: Session,
    *,
    asset_type: str,
    onchain_balance: Decimal,
    database_balance: Decimal,
    notes: Optional[str] = None,
    actor: str = "system",
) -> TreasuryReconciliation:
    """Persist a reconciliation snapshot. Does not commit."""
    pct = discrepancy_pct(onchain_balance, database_balance)
    rec = TreasuryReconciliation(
        asset_type=asset_type.upper(),
        onchain_balance=onchain_balance,
        database_balance=database_balance,
        discrepancy=onchain_balance - database_balance,
        discrepancy_pct=pct,
        status=ReconciliationStatus.MATCHED if pct < MATCH_THRESHOLD_PCT else ReconciliationStatus.DISCREPANCY,
        notes=notes,
        created_by=actor,
    )
    session.add(rec)
    session.flush()
    log_event(
        session,
        action=AuditAction.TREASURY_RECONCILIATION_RECORDED,
        entity_type="treasury_reconciliation",
        entity_id=str(rec.id),
        actor=actor,
        actor_type=ActorType.SYSTEM if actor == "system" else ActorType.ADMIN,
        details={
            "asset_type": rec.asset_type,
            "onchain_balance": onchain_balance,
            "database_balance": database_balance,
            "discrepancy_pct": pct,
            "status": rec.status.value,
        },
    )
    met.reconciliation_discrepancy_pct.labels(asset_type=rec.asset_type).set(float(pct))
    if rec.status == ReconciliationStatus.DISCREPANCY:
        logger.warning(
            "%s treasury discrepancy: onchain=%s ledger=%s (%s%%)",
            rec.asset_type,
            onchain_balance,
            database_balance,
            pct,
        )
    return rec


def resolve_reconciliation(
    session: Session, rec_id: int, *, actor: str, notes: Optional[str] = None
) -> TreasuryReconciliation:
    rec = session.get(TreasuryReconciliation, rec_id)
    if rec is None:
        raise LookupError(f"reconciliation {rec_id} not found")
    if rec.status == ReconciliationStatus.RESOLVED:
        return rec
    rec.status = ReconciliationStatus.RESOLVED
    rec.resolved_by = actor
    rec.resolved_at = utcnow()
    if notes:
        rec.notes = f"{rec.notes}\n{notes}" if rec.notes else notes
    session.add(rec)
    return rec


async def reconcile_btc_treasury(
    session_factory: SessionFactory, esplora: EsploraClient, *, actor: str = "system"
) -> Optional[TreasuryReconciliation]:
    """Compare the active BTC wallet's confirmed balance with ledger inventory."""
    with session_factory() as session:
        wallet = get_active_wallet(session, Chain.BTC)
        if wallet is None:
            logger.warning("no active BTC treasury wallet; skipping reconciliation")
            return None
        address = wallet.address

    onchain = sats_to_btc(await esplora.address_balance_sats(address))

    with session_factory() as session:
        rec = record_reconciliation(
            session,
            asset_type="BTC",
            onchain_balance=onchain,
            database_balance=ledger_balance_btc(session),
            notes=f"address {address}",
            actor=actor,
        )
        session.commit()
        session.refresh(rec)
        return rec
