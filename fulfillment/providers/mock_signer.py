"""Mock custody signer for local runs and tests.

Failures can be injected via the ``MOCK_SIGNER_FAIL`` env variable
(``send``); latency via ``MOCK_SIGNER_LATENCY`` seconds.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
from decimal import Decimal
from typing import Dict

from treasury_domain.errors import SignerError

from .base import SendResult, SignerProvider


class MockSigner(SignerProvider):
    """In-memory signer returning deterministic fake transaction ids."""

    def __init__(self, *, fail: bool | None = None, latency: float | None = None):
        self._fail = fail if fail is not None else os.getenv("MOCK_SIGNER_FAIL", "") == "send"
        self._latency = (
            latency if latency is not None else float(os.getenv("MOCK_SIGNER_LATENCY", "0"))
        )
        self.sent: Dict[str, SendResult] = {}

    async def send_btc(self, destination: str, amount_btc: Decimal, idem: str) -> SendResult:
        if self._latency:
            await asyncio.sleep(self._latency)
        if self._fail:
            raise SignerError("mock signer forced failure for send")
        if idem in self.sent:
            return self.sent[idem]
        tx_hash = hashlib.sha256(f"{idem}:{destination}:{amount_btc}".encode()).hexdigest()
        result: SendResult = {
            "tx_hash": tx_hash,
            "provider_ref": f"mock-{idem}",
            "raw": {"destination": destination, "amount_btc": str(amount_btc), "idempotency": idem},
        }
        self.sent[idem] = result
        return result
