"""KYC status lookup used by the fulfillment KYC gate."""
from __future__ import annotations

from typing import Optional, Protocol

from sqlmodel import Session

from treasury_domain.order_models import CustomerProfile, KycStatus

__all__ = ["KycDirectory", "ProfileKycDirectory"]


class KycDirectory(Protocol):
    def kyc_status(self, customer_id: str) -> KycStatus:
        ...

    def btc_address(self, customer_id: str) -> Optional[str]:
        ...


class ProfileKycDirectory:
    """Reads KYC standing from ``customer_profiles`` through the caller's session."""

    def __init__(self, session: Session):
        self._session = session

    def _profile(self, customer_id: str) -> Optional[CustomerProfile]:
        return self._session.get(CustomerProfile, customer_id)

    def kyc_status(self, customer_id: str) -> KycStatus:
        profile = self._profile(customer_id)
        return profile.kyc_status if profile else KycStatus.NOT_STARTED

    def btc_address(self, customer_id: str) -> Optional[str]:
        profile = self._profile(customer_id)
        return profile.btc_address if profile else None
