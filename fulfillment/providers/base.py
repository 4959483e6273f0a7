"""Signer interface definitions.

Key management and transaction construction live with the custody provider;
the engine only asks it to pay an address and records the resulting hash.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Protocol, TypedDict

__all__ = ["SendResult", "SignerProvider"]


class SendResult(TypedDict, total=False):
    tx_hash: str  # broadcast transaction id
    provider_ref: str  # opaque reference/id returned by provider
    raw: Dict[str, Any]  # raw provider response for debugging


class SignerProvider(Protocol):
    """Protocol for custody signers.

    ``idem`` is the fulfillment order id; providers must treat repeated calls
    with the same key as the same payout.
    """

    async def send_btc(self, destination: str, amount_btc: Decimal, idem: str) -> SendResult:
        ...
