"""HTTP adapter for an external custody signing service.

``POST {SIGNER_URL}/v1/payouts/btc`` with a bearer token taken from the
``SIGNER_API_TOKEN`` secret and the fulfillment order id as
``Idempotency-Key``. Sends are not retried here. A 4xx answer is a refusal
(:class:`SignerError`); a transport error or 5xx answer leaves the payout
outcome unknown (:class:`SignerUnavailable`) and the order stays in SENDING
for an operator to reconcile against the provider.
"""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Optional

import httpx

from common.secrets import get_secret
from treasury_domain.errors import SignerError, SignerUnavailable

from .base import SendResult, SignerProvider

__all__ = ["CustodySigner"]

_LOG = logging.getLogger(__name__)


class CustodySigner(SignerProvider):
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self._base_url = base_url or os.getenv("SIGNER_URL", "http://localhost:8600")
        self._token = token
        self._transport = transport
        self._timeout = timeout

    async def send_btc(self, destination: str, amount_btc: Decimal, idem: str) -> SendResult:
        token = self._token or get_secret("SIGNER_API_TOKEN")
        if not token:
            raise SignerError("SIGNER_API_TOKEN is not configured")
        headers = {"Authorization": f"Bearer {token}", "Idempotency-Key": idem}
        body = {"destination": destination, "amount_btc": str(amount_btc), "reference": idem}
        async with httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        ) as client:
            try:
                resp = await client.post("/v1/payouts/btc", json=body, headers=headers)
            except httpx.RequestError as exc:
                raise SignerUnavailable(f"signer unreachable: {exc}") from exc
        if resp.status_code >= 500:
            _LOG.error("signer error: status=%s body=%s", resp.status_code, resp.text[:500])
            raise SignerUnavailable(f"signer answered with status {resp.status_code}")
        if resp.status_code >= 400:
            _LOG.error("signer rejected payout: status=%s body=%s", resp.status_code, resp.text[:500])
            raise SignerError(f"signer rejected payout with status {resp.status_code}")
        data = resp.json()
        tx_hash = data.get("txid") or data.get("tx_hash")
        if not tx_hash:
            raise SignerError("signer response did not include a transaction id")
        return {"tx_hash": tx_hash, "provider_ref": str(data.get("id", "")), "raw": data}
