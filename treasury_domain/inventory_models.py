from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, Column, Index
from sqlmodel import Field, SQLModel

__all__ = [
    "SATS_PER_BTC",
    "Chain",
    "InventorySource",
    "TreasuryWallet",
    "InventoryLot",
    "LotAllocation",
    "sats_to_btc",
]

SATS_PER_BTC = 100_000_000


def sats_to_btc(sats: int) -> Decimal:
    return (Decimal(sats) / SATS_PER_BTC).quantize(Decimal("0.00000001"))


class Chain(str, Enum):
    BTC = "BTC"
    ETH = "ETH"


class InventorySource(str, Enum):
    MANUAL_TOPUP = "manual_topup"
    EXCHANGE_WITHDRAW = "exchange_withdraw"
    OTHER = "other"


class TreasuryWallet(SQLModel, table=True):
    """Treasury receiving address; at most one active per chain."""

    __tablename__ = "treasury_wallets"

    id: Optional[int] = Field(default=None, primary_key=True)
    chain: Chain = Field(index=True)
    address: str = Field(nullable=False)
    label: Optional[str] = None
    is_active: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class InventoryLot(SQLModel, table=True):
    """A discrete deposit of BTC into treasury.

    Quantities are integer satoshis so that the conservation identity
    ``available + sum(active allocations) == total`` holds exactly on every
    backend. Lots are never deleted.
    """

    __tablename__ = "inventory_lots"
    __table_args__ = (
        CheckConstraint(
            "amount_available_sats >= 0 AND amount_available_sats <= amount_total_sats",
            name="ck_inventory_lots_available_range",
        ),
        Index("idx_inventory_lots_fifo", "eligible_at", "received_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    treasury_wallet_id: Optional[int] = Field(default=None, foreign_key="treasury_wallets.id")
    amount_total_sats: int = Field(sa_column=Column(BigInteger, nullable=False))
    amount_available_sats: int = Field(sa_column=Column(BigInteger, nullable=False))
    received_at: datetime = Field(nullable=False)
    eligible_at: datetime = Field(nullable=False)
    source: InventorySource = Field(default=InventorySource.MANUAL_TOPUP)
    reference_id: Optional[str] = Field(default=None, index=True)
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def amount_total(self) -> Decimal:
        return sats_to_btc(self.amount_total_sats)

    @property
    def amount_available(self) -> Decimal:
        return sats_to_btc(self.amount_available_sats)


class LotAllocation(SQLModel, table=True):
    """A draw from a lot on behalf of one fulfillment order."""

    __tablename__ = "lot_allocations"

    id: Optional[int] = Field(default=None, primary_key=True)
    lot_id: int = Field(foreign_key="inventory_lots.id", index=True)
    fulfillment_id: str = Field(index=True)
    amount_sats: int = Field(sa_column=Column(BigInteger, nullable=False))
    is_reversed: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    reversed_at: Optional[datetime] = None

    @property
    def amount(self) -> Decimal:
        return sats_to_btc(self.amount_sats)
