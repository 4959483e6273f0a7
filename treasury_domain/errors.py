"""Exception taxonomy shared by the treasury services.

Insufficient inventory and verification mismatches are ordinary outcomes and
are reported through result objects, not exceptions.
"""
from __future__ import annotations

__all__ = [
    "TreasuryError",
    "InvalidTransition",
    "LotInvariantError",
    "OrderNotFound",
    "ChainDataUnavailable",
    "PriceUnavailable",
    "SignerError",
    "SignerUnavailable",
]


class TreasuryError(Exception):
    """Base class for treasury engine errors."""


class InvalidTransition(TreasuryError):
    def __init__(self, order_id: str, current: str, requested: str) -> None:
        super().__init__(f"illegal transition for {order_id}: {current} -> {requested}")
        self.order_id = order_id
        self.current = current
        self.requested = requested


class LotInvariantError(TreasuryError):
    """A lot changed under an allocation, or a reversal would overflow it."""


class OrderNotFound(TreasuryError, LookupError):
    pass


class ChainDataUnavailable(TreasuryError):
    """Transient explorer / RPC failure; retry on the next run."""


class PriceUnavailable(TreasuryError):
    pass


class SignerError(TreasuryError):
    """The signer refused the payout; nothing was broadcast."""


class SignerUnavailable(SignerError):
    """No answer from the signer; the payout may or may not have gone out."""
