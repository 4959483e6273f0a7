from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

import ulid
from sqlalchemy import BigInteger, Column, Date, Numeric, String, UniqueConstraint
from sqlmodel import Field, SQLModel

__all__ = [
    "FulfillmentStatus",
    "FulfillmentType",
    "OrderKycStatus",
    "KycStatus",
    "SwapOrderStatus",
    "SwapOrderType",
    "FundingSource",
    "FulfillmentOrder",
    "CustomerSwapOrder",
    "CashoutOrder",
    "CustomerProfile",
    "DailyBtcSend",
    "ReconciliationStatus",
    "TreasuryReconciliation",
]


def _ulid() -> str:
    return str(ulid.new())


class FulfillmentStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    KYC_PENDING = "KYC_PENDING"
    WAITING_INVENTORY = "WAITING_INVENTORY"
    READY_TO_SEND = "READY_TO_SEND"
    SENDING = "SENDING"
    SENT = "SENT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    HOLD = "HOLD"


class FulfillmentType(str, Enum):
    REDEMPTION = "REDEMPTION"
    BUY_ORDER = "BUY_ORDER"


class OrderKycStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class KycStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SwapOrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SwapOrderType(str, Enum):
    BUY_BTC = "BUY_BTC"
    SELL_BTC = "SELL_BTC"


class FundingSource(str, Enum):
    # Customer pays with an on-chain USDC transfer checked by the verifier.
    ONCHAIN_USDC = "ONCHAIN_USDC"
    # Customer pays from a balance held in our own custody ledger.
    CUSTODIAL_BALANCE = "CUSTODIAL_BALANCE"


class FulfillmentOrder(SQLModel, table=True):
    """Obligation to deliver BTC to a destination address."""

    __tablename__ = "fulfillment_orders"
    __table_args__ = (
        UniqueConstraint("swap_order_id", name="uq_fulfillment_swap_order"),
    )

    id: str = Field(primary_key=True, default_factory=_ulid)
    order_type: FulfillmentType = Field(index=True)
    customer_id: Optional[str] = Field(default=None, index=True)
    swap_order_id: Optional[str] = Field(default=None, foreign_key="customer_swap_orders.id")
    bitcard_id: Optional[str] = None
    usd_value: Decimal = Field(sa_column=Column(Numeric(14, 2), nullable=False))
    destination_address: Optional[str] = None
    kyc_status: OrderKycStatus = Field(default=OrderKycStatus.PENDING)
    btc_amount: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(18, 8)))
    btc_price_used: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(14, 2)))
    status: FulfillmentStatus = Field(default=FulfillmentStatus.SUBMITTED, index=True)
    blocked_reason: Optional[str] = None
    tx_hash: Optional[str] = Field(default=None, index=True)
    signer_ref: Optional[str] = None
    revision: int = Field(default=0)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CustomerSwapOrder(SQLModel, table=True):
    """Customer request to exchange BTC and USDC."""

    __tablename__ = "customer_swap_orders"

    id: str = Field(primary_key=True, default_factory=_ulid)
    order_id: str = Field(sa_column=Column(String, unique=True, nullable=False))
    customer_id: str = Field(index=True)
    order_type: SwapOrderType = Field(index=True)
    funding_source: FundingSource = Field(default=FundingSource.ONCHAIN_USDC)
    btc_amount: Decimal = Field(sa_column=Column(Numeric(18, 8), nullable=False))
    usdc_amount: Decimal = Field(sa_column=Column(Numeric(18, 6), nullable=False))
    btc_price_at_order: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(14, 2)))
    fee_usdc: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(18, 6), nullable=False))
    destination_address: Optional[str] = None
    # declared payer address (USDC sender for buys, BTC input for sells)
    source_address: Optional[str] = None
    status: SwapOrderStatus = Field(default=SwapOrderStatus.PENDING, index=True)
    inventory_allocated: bool = Field(default=False)
    # anti-replay key: a chain transaction settles at most one order
    tx_hash: Optional[str] = Field(default=None, sa_column=Column(String, unique=True, nullable=True))
    failed_reason: Optional[str] = None
    # why the queue has not opened a fulfillment yet
    blocked_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


class CashoutOrder(SQLModel, table=True):
    """Crypto to fiat (ACH) cash-out; settled outside the BTC engine."""

    __tablename__ = "cashout_orders"

    id: str = Field(primary_key=True, default_factory=_ulid)
    order_id: str = Field(sa_column=Column(String, unique=True, nullable=False))
    user_id: str = Field(index=True)
    bank_account_id: str
    source_asset: str
    source_amount: Decimal = Field(sa_column=Column(Numeric(18, 8), nullable=False))
    usd_amount: Decimal = Field(sa_column=Column(Numeric(14, 2), nullable=False))
    fee_usd: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(14, 2), nullable=False))
    conversion_rate: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(18, 8)))
    status: str = Field(default="PENDING", index=True)
    ach_transfer_id: Optional[str] = None
    failed_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CustomerProfile(SQLModel, table=True):
    """KYC standing and payout address; maintained by the identity service."""

    __tablename__ = "customer_profiles"

    customer_id: str = Field(primary_key=True)
    kyc_status: KycStatus = Field(default=KycStatus.NOT_STARTED)
    btc_address: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class DailyBtcSend(SQLModel, table=True):
    __tablename__ = "daily_btc_sends"

    id: Optional[int] = Field(default=None, primary_key=True)
    send_date: date = Field(sa_column=Column(Date, unique=True, nullable=False))
    total_sats: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    transaction_count: int = 0
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ReconciliationStatus(str, Enum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    DISCREPANCY = "DISCREPANCY"
    RESOLVED = "RESOLVED"


class TreasuryReconciliation(SQLModel, table=True):
    """Point-in-time comparison of on-chain balance with the ledger."""

    __tablename__ = "treasury_reconciliations"

    id: Optional[int] = Field(default=None, primary_key=True)
    asset_type: str = Field(index=True)
    onchain_balance: Decimal = Field(sa_column=Column(Numeric(24, 8), nullable=False))
    database_balance: Decimal = Field(sa_column=Column(Numeric(24, 8), nullable=False))
    discrepancy: Decimal = Field(sa_column=Column(Numeric(24, 8), nullable=False))
    discrepancy_pct: Decimal = Field(sa_column=Column(Numeric(12, 6), nullable=False))
    status: ReconciliationStatus = Field(default=ReconciliationStatus.PENDING, index=True)
    notes: Optional[str] = None
    created_by: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
