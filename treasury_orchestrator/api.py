"""FastAPI app exposing the treasury engine to operators and the web tier."""
from __future__ import annotations

import os

from common.logging import configure_logging

configure_logging(os.getenv("LOG_FORMAT", "json"), service_name="treasury_orchestrator")

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, status
from prometheus_client import make_asgi_app
from pydantic import BaseModel, Field
from sqlmodel import Session

from common.auth import require_admin
from common.datetime import to_naive_utc
from fulfillment.providers import SignerProvider, get_signer
from fulfillment.queue_processor import QueueProcessor
from fulfillment.state_machine import create_fulfillment_order, hold_order, release_hold
from integrations.chain.esplora_client import EsploraClient
from integrations.chain.evm_client import EvmRpcClient
from integrations.price_oracle import PriceOracle
from inventory_ledger.ledger import get_inventory_stats, record_lot, set_active_wallet
from settlement.balances import record_reconciliation
from settlement.chain_monitor import ChainMonitor
from settlement.verifier import TransferVerifier
from treasury_domain.db import SessionFactory, get_session, get_session_factory, init_db
from treasury_domain.errors import InvalidTransition, OrderNotFound
from treasury_domain.inventory_models import Chain, InventorySource
from treasury_domain.order_models import FulfillmentOrder, FulfillmentType, OrderKycStatus
from treasury_orchestrator.controls import load_controls, update_setting

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Dependency injection helpers
# ---------------------------------------------------------------------------

_price_oracle = PriceOracle()


def get_price_oracle() -> PriceOracle:
    return _price_oracle


def get_rpc_client() -> EvmRpcClient:  # pragma: no cover - network default
    return EvmRpcClient()


def get_esplora_client() -> EsploraClient:  # pragma: no cover - network default
    return EsploraClient()


def _actor(principal: Dict[str, Any]) -> str:
    return str(principal.get("email") or principal.get("sub") or "admin")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class VerifyTransferRequest(BaseModel):
    tx_hash: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)
    expected_amount: Decimal = Field(..., gt=0)
    expected_recipient: str = Field(..., min_length=1)


class LotRequest(BaseModel):
    amount_btc: Decimal = Field(..., gt=0)
    source: InventorySource = InventorySource.MANUAL_TOPUP
    received_at: Optional[datetime] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None


class WalletRequest(BaseModel):
    chain: Chain
    address: str = Field(..., min_length=1)
    label: Optional[str] = None


class FulfillmentRequest(BaseModel):
    order_type: FulfillmentType = FulfillmentType.REDEMPTION
    usd_value: Decimal = Field(..., gt=0)
    destination_address: Optional[str] = None
    customer_id: Optional[str] = None
    btc_amount: Optional[Decimal] = Field(default=None, gt=0)
    bitcard_id: Optional[str] = None
    kyc_status: OrderKycStatus = OrderKycStatus.PENDING


class HoldRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class SettingRequest(BaseModel):
    value: Optional[str] = None


class ReconciliationRequest(BaseModel):
    asset_type: str = Field(..., pattern="^(BTC|USDC)$")
    onchain_balance: Decimal = Field(..., ge=0)
    database_balance: Decimal = Field(..., ge=0)
    notes: Optional[str] = None


def _order_dict(order: FulfillmentOrder) -> Dict[str, Any]:
    return {
        "id": order.id,
        "status": order.status.value,
        "blocked_reason": order.blocked_reason,
        "btc_amount": str(order.btc_amount) if order.btc_amount is not None else None,
        "destination_address": order.destination_address,
        "tx_hash": order.tx_hash,
    }


# ---------------------------------------------------------------------------
# Router definition
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api/treasury/v1", tags=["treasury"])


def create_app() -> FastAPI:
    """Factory used by tests and the uvicorn entrypoint."""
    app = FastAPI(title="Treasury Inventory & Settlement Engine")
    app.include_router(router)

    @app.get("/healthz")
    def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup_init_db() -> None:  # pragma: no cover
        init_db()

    app.mount("/metrics", make_asgi_app())
    return app


@router.post("/queue/run")
async def run_queue(
    factory: SessionFactory = Depends(get_session_factory),
    signer: SignerProvider = Depends(get_signer),
    oracle: PriceOracle = Depends(get_price_oracle),
    _: Dict[str, Any] = Depends(require_admin),
):
    report = await QueueProcessor(factory, signer, price_oracle=oracle).run_once()
    return report.as_dict()


@router.post("/usdc/verify")
async def verify_usdc_transfer(
    req: VerifyTransferRequest,
    factory: SessionFactory = Depends(get_session_factory),
    rpc: EvmRpcClient = Depends(get_rpc_client),
    _: Dict[str, Any] = Depends(require_admin),
):
    if not rpc.configured:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Blockchain RPC not configured")
    try:
        result = await TransferVerifier(rpc, factory).verify(
            req.tx_hash, req.order_id, req.expected_amount, req.expected_recipient
        )
    except OrderNotFound as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if result.replay:
        raise HTTPException(
            status.HTTP_409_CONFLICT,
            detail={"error": result.error, "existing_order_id": result.existing_order_id},
        )
    return result.as_dict()


@router.post("/chain/monitor")
async def monitor_chain(
    factory: SessionFactory = Depends(get_session_factory),
    esplora: EsploraClient = Depends(get_esplora_client),
    _: Dict[str, Any] = Depends(require_admin),
):
    report = await ChainMonitor(esplora, factory).run_once()
    return report.as_dict()


@router.get("/inventory/stats")
def inventory_stats(
    session: Session = Depends(get_session),
    _: Dict[str, Any] = Depends(require_admin),
):
    return get_inventory_stats(session).as_dict()


@router.post("/inventory/lots", status_code=status.HTTP_201_CREATED)
def add_lot(
    req: LotRequest,
    session: Session = Depends(get_session),
    principal: Dict[str, Any] = Depends(require_admin),
):
    controls = load_controls(session)
    lot = record_lot(
        session,
        req.amount_btc,
        hold_duration=controls.hold_duration,
        received_at=to_naive_utc(req.received_at) if req.received_at else None,
        source=req.source,
        reference_id=req.reference_id,
        notes=req.notes,
        created_by=_actor(principal),
    )
    session.commit()
    session.refresh(lot)
    return {
        "id": lot.id,
        "amount_btc": str(lot.amount_total),
        "received_at": lot.received_at.isoformat(),
        "eligible_at": lot.eligible_at.isoformat(),
    }


@router.post("/inventory/wallets", status_code=status.HTTP_201_CREATED)
def activate_wallet(
    req: WalletRequest,
    session: Session = Depends(get_session),
    principal: Dict[str, Any] = Depends(require_admin),
):
    try:
        wallet = set_active_wallet(session, req.chain, req.address, label=req.label, actor=_actor(principal))
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    session.commit()
    return {"id": wallet.id, "chain": wallet.chain.value, "address": wallet.address, "is_active": True}


@router.post("/fulfillment-orders", status_code=status.HTTP_201_CREATED)
def create_fulfillment(
    req: FulfillmentRequest,
    session: Session = Depends(get_session),
    principal: Dict[str, Any] = Depends(require_admin),
):
    order = create_fulfillment_order(
        session,
        order_type=req.order_type,
        usd_value=req.usd_value,
        destination_address=req.destination_address,
        customer_id=req.customer_id,
        btc_amount=req.btc_amount,
        bitcard_id=req.bitcard_id,
        kyc_status=req.kyc_status,
        actor=_actor(principal),
    )
    session.commit()
    session.refresh(order)
    return _order_dict(order)


def _load_order(session: Session, order_id: str) -> FulfillmentOrder:
    order = session.get(FulfillmentOrder, order_id)
    if order is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Fulfillment order not found")
    return order


@router.post("/fulfillment-orders/{order_id}/hold")
def hold_fulfillment(
    order_id: str,
    req: HoldRequest,
    session: Session = Depends(get_session),
    principal: Dict[str, Any] = Depends(require_admin),
):
    order = _load_order(session, order_id)
    try:
        restored = hold_order(session, order, reason=req.reason, actor=_actor(principal))
    except InvalidTransition as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    session.commit()
    session.refresh(order)
    return {**_order_dict(order), "restored_btc": str(restored)}


@router.post("/fulfillment-orders/{order_id}/release")
def release_fulfillment(
    order_id: str,
    session: Session = Depends(get_session),
    principal: Dict[str, Any] = Depends(require_admin),
):
    order = _load_order(session, order_id)
    try:
        release_hold(session, order, actor=_actor(principal))
    except InvalidTransition as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    session.commit()
    session.refresh(order)
    return _order_dict(order)


@router.put("/settings/{key}")
def put_setting(
    key: str,
    req: SettingRequest,
    session: Session = Depends(get_session),
    principal: Dict[str, Any] = Depends(require_admin),
):
    try:
        row = update_setting(session, key, req.value, actor=_actor(principal))
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    session.commit()
    return {"key": row.key, "value": row.value, "updated_by": row.updated_by}


@router.post("/reconciliations", status_code=status.HTTP_201_CREATED)
def create_reconciliation(
    req: ReconciliationRequest,
    session: Session = Depends(get_session),
    principal: Dict[str, Any] = Depends(require_admin),
):
    rec = record_reconciliation(
        session,
        asset_type=req.asset_type,
        onchain_balance=req.onchain_balance,
        database_balance=req.database_balance,
        notes=req.notes,
        actor=_actor(principal),
    )
    session.commit()
    session.refresh(rec)
    return {
        "id": rec.id,
        "status": rec.status.value,
        "discrepancy": str(rec.discrepancy),
        "discrepancy_pct": str(rec.discrepancy_pct),
    }


app = create_app()
