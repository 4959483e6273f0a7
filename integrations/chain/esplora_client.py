"""Esplora (Blockstream) REST client for the treasury BTC address.

Only the fields the chain monitor needs are parsed. Explorer payloads are
treated leniently: missing status blocks, absent prevouts or empty lists
mean "not yet observed", never an error.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Tuple

import httpx

from common.datetime import from_epoch
from treasury_domain.errors import ChainDataUnavailable

from . import ESPLORA_BASE_URL
from .http import ChainHTTP

__all__ = ["EsploraClient", "EsploraTx"]


@dataclass(frozen=True)
class EsploraTx:
    txid: str
    confirmed: bool = False
    block_height: Optional[int] = None
    block_time: Optional[datetime] = None
    input_addresses: Tuple[str, ...] = ()
    # (address, value in satoshis)
    outputs: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "EsploraTx":
        status = data.get("status") or {}
        inputs = []
        for vin in data.get("vin") or []:
            addr = (vin.get("prevout") or {}).get("scriptpubkey_address")
            if addr:
                inputs.append(addr)
        outputs = []
        for vout in data.get("vout") or []:
            addr = vout.get("scriptpubkey_address")
            value = vout.get("value")
            if addr and isinstance(value, int):
                outputs.append((addr, value))
        return cls(
            txid=str(data.get("txid", "")),
            confirmed=bool(status.get("confirmed")),
            block_height=status.get("block_height"),
            block_time=from_epoch(status.get("block_time")),
            input_addresses=tuple(inputs),
            outputs=tuple(outputs),
        )

    def received_by(self, address: str) -> int:
        """Total satoshis paid to *address* by this transaction."""
        return sum(value for addr, value in self.outputs if addr == address)

    @property
    def sender(self) -> Optional[str]:
        return self.input_addresses[0] if self.input_addresses else None


class EsploraClient:
    def __init__(self, http: Optional[ChainHTTP] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._http = http or ChainHTTP(product="esplora", base_url=ESPLORA_BASE_URL, transport=transport)

    async def _json(self, path: str) -> Any:
        resp = await self._http.get(path)
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise ChainDataUnavailable(f"esplora {path}: HTTP {resp.status_code}")
        return resp.json()

    async def address_txs(self, address: str) -> List[EsploraTx]:
        """Most recent transactions touching *address* (mempool first, then chain)."""
        data = await self._json(f"/address/{address}/txs")
        return [EsploraTx.from_json(item) for item in data or [] if isinstance(item, dict)]

    async def tx(self, txid: str) -> Optional[EsploraTx]:
        data = await self._json(f"/tx/{txid}")
        if not isinstance(data, dict):
            return None
        return EsploraTx.from_json(data)

    async def tip_height(self) -> Optional[int]:
        resp = await self._http.get("/blocks/tip/height")
        if resp.status_code >= 400:
            raise ChainDataUnavailable(f"esplora tip height: HTTP {resp.status_code}")
        text = resp.text.strip()
        return int(text) if text.isdigit() else None

    async def address_balance_sats(self, address: str) -> int:
        """Confirmed balance: funded minus spent outputs."""
        data = await self._json(f"/address/{address}") or {}
        stats = data.get("chain_stats") or {}
        return int(stats.get("funded_txo_sum", 0)) - int(stats.get("spent_txo_sum", 0))

    async def aclose(self) -> None:
        await self._http.aclose()
