from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytest
from sqlmodel import Session, create_engine

from common import secrets as secrets_module
from treasury_domain.db import init_db
from treasury_domain.inventory_models import Chain, InventoryLot, TreasuryWallet
from treasury_domain.order_models import (
    CustomerProfile,
    CustomerSwapOrder,
    FundingSource,
    KycStatus,
    SwapOrderType,
)
from inventory_ledger.ledger import btc_to_sats

TREASURY_BTC = "bc1qtreasury0000000000000000000000000000"
TREASURY_ETH = "0x1111111111111111111111111111111111111111"
CUSTOMER_BTC = "bc1qcustomer000000000000000000000000000"


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    """Run ``@pytest.mark.anyio`` tests on asyncio, the event loop the code targets."""

    return "asyncio"


# ---------------------------------------------------------------------------
# Default secrets for API and chain tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _secrets() -> None:
    """Provide default secrets for tests via the secrets manager."""

    secrets_module.secrets.set_override(
        {
            "API_TOKENS": {"tester": "testtoken"},
            "JWT_SECRET": "testsecret",
            "ALCHEMY_API_KEY": "test-key",
        }
    )
    yield
    secrets_module.secrets.clear_override()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path}/treasury.db", connect_args={"check_same_thread": False})
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    def _factory() -> Session:
        return Session(engine)

    return _factory


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


def add_lot(
    session: Session,
    amount_btc: str,
    *,
    received_at: datetime,
    hold: timedelta = timedelta(hours=24),
    available_btc: Optional[str] = None,
) -> InventoryLot:
    """Insert a lot directly (no audit) and commit."""
    total = btc_to_sats(amount_btc)
    lot = InventoryLot(
        amount_total_sats=total,
        amount_available_sats=btc_to_sats(available_btc) if available_btc is not None else total,
        received_at=received_at,
        eligible_at=received_at + hold,
    )
    session.add(lot)
    session.commit()
    session.refresh(lot)
    return lot


def add_wallet(session: Session, chain: Chain, address: str) -> TreasuryWallet:
    wallet = TreasuryWallet(chain=chain, address=address, is_active=True)
    session.add(wallet)
    session.commit()
    session.refresh(wallet)
    return wallet


def add_customer(
    session: Session,
    customer_id: str,
    *,
    kyc: KycStatus = KycStatus.APPROVED,
    btc_address: Optional[str] = CUSTOMER_BTC,
) -> CustomerProfile:
    profile = CustomerProfile(customer_id=customer_id, kyc_status=kyc, btc_address=btc_address)
    session.add(profile)
    session.commit()
    return profile


def add_swap(
    session: Session,
    order_ref: str,
    *,
    order_type: SwapOrderType = SwapOrderType.BUY_BTC,
    btc_amount: str = "0.01",
    usdc_amount: str = "1000",
    customer_id: str = "cust-1",
    funding_source: FundingSource = FundingSource.ONCHAIN_USDC,
    source_address: Optional[str] = None,
    destination_address: Optional[str] = CUSTOMER_BTC,
) -> CustomerSwapOrder:
    swap = CustomerSwapOrder(
        order_id=order_ref,
        customer_id=customer_id,
        order_type=order_type,
        funding_source=funding_source,
        btc_amount=Decimal(btc_amount),
        usdc_amount=Decimal(usdc_amount),
        btc_price_at_order=Decimal("100000"),
        source_address=source_address,
        destination_address=destination_address,
    )
    session.add(swap)
    session.commit()
    session.refresh(swap)
    return swap
