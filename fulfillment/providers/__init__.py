"""Custody signer adapters used to broadcast BTC payouts."""
from __future__ import annotations

import os

from .base import SendResult, SignerProvider
from .custody_http import CustodySigner
from .mock_signer import MockSigner

__all__ = ["SendResult", "SignerProvider", "CustodySigner", "MockSigner", "get_signer"]


def get_signer() -> SignerProvider:
    """Select the signer adapter via ``SIGNER_BACKEND``.

    ``http`` (the default) talks to the custody service. The mock signer is
    only used when ``SIGNER_BACKEND=mock`` is set explicitly.
    """
    backend = (os.getenv("SIGNER_BACKEND") or "http").strip().lower()
    if backend == "http":
        return CustodySigner()
    if backend == "mock":
        return MockSigner()
    raise ValueError(f"unknown SIGNER_BACKEND: {backend!r}")
