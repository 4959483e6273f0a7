"""Ethereum JSON-RPC client (Alchemy) for ERC-20 transfer verification."""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

import httpx

from common.secrets import get_secret
from treasury_domain.errors import ChainDataUnavailable

from . import ALCHEMY_RPC_URL
from .http import ChainHTTP

__all__ = ["EvmRpcClient", "Erc20Transfer", "RpcError", "TxReceipt", "TRANSFER_TOPIC"]

_LOG = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
USDC_DECIMALS = 6


class RpcError(Exception):
    """The node answered with a JSON-RPC ``error`` object."""


def _hex_int(value: Any) -> Optional[int]:
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.startswith("0x"):
        try:
            return int(value, 16)
        except ValueError:
            return None
    return None


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _scale(raw: int, decimals: int) -> Decimal:
    return (Decimal(raw) / (Decimal(10) ** decimals)).quantize(Decimal(1).scaleb(-decimals))


@dataclass(frozen=True)
class Erc20Transfer:
    tx_hash: str
    from_address: str
    to_address: str
    contract: str
    value: Decimal
    block_number: Optional[int]

    @classmethod
    def from_asset_transfer(cls, item: dict[str, Any]) -> "Erc20Transfer":
        raw = item.get("rawContract") or {}
        raw_value = _hex_int(raw.get("value"))
        decimals = _hex_int(raw.get("decimal"))
        if raw_value is not None and decimals is not None:
            value = _scale(raw_value, decimals)
        else:
            value = Decimal(str(item.get("value") or 0))
        return cls(
            tx_hash=str(item.get("hash", "")).lower(),
            from_address=str(item.get("from") or "").lower(),
            to_address=str(item.get("to") or "").lower(),
            contract=str(raw.get("address") or "").lower(),
            value=value,
            block_number=_hex_int(item.get("blockNum")),
        )


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    succeeded: bool
    block_number: Optional[int]
    logs: tuple

    def erc20_transfers(self, contract: str, decimals: int = USDC_DECIMALS) -> List[Erc20Transfer]:
        out = []
        for log in self.logs:
            topics = log.get("topics") or []
            if str(log.get("address", "")).lower() != contract.lower():
                continue
            if len(topics) < 3 or str(topics[0]).lower() != TRANSFER_TOPIC:
                continue
            raw_value = _hex_int(log.get("data")) or 0
            out.append(
                Erc20Transfer(
                    tx_hash=self.tx_hash,
                    from_address=_topic_address(topics[1]),
                    to_address=_topic_address(topics[2]),
                    contract=contract.lower(),
                    value=_scale(raw_value, decimals),
                    block_number=self.block_number,
                )
            )
        return out


class EvmRpcClient:
    """Thin JSON-RPC wrapper; the API key is read from secrets per request."""

    def __init__(
        self,
        http: Optional[ChainHTTP] = None,
        *,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._http = http or ChainHTTP(product="alchemy", base_url=ALCHEMY_RPC_URL, transport=transport)
        self._api_key = api_key
        self._ids = itertools.count(1)

    @property
    def configured(self) -> bool:
        return bool(self._api_key or get_secret("ALCHEMY_API_KEY"))

    async def call(self, method: str, params: list) -> Any:
        key = self._api_key or get_secret("ALCHEMY_API_KEY")
        if not key:
            raise ChainDataUnavailable("ALCHEMY_API_KEY is not configured")
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = await self._http.post(f"/{key}", json=payload, endpoint=method)
        if resp.status_code >= 400:
            raise ChainDataUnavailable(f"alchemy {method}: HTTP {resp.status_code}")
        body = resp.json()
        if body.get("error"):
            err = body["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise RpcError(message or "RPC error")
        return body.get("result")

    async def block_number(self) -> int:
        value = _hex_int(await self.call("eth_blockNumber", []))
        if value is None:
            raise ChainDataUnavailable("eth_blockNumber returned no block")
        return value

    async def transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        data = await self.call("eth_getTransactionReceipt", [tx_hash])
        if not data:
            return None
        return TxReceipt(
            tx_hash=tx_hash.lower(),
            succeeded=data.get("status") == "0x1",
            block_number=_hex_int(data.get("blockNumber")),
            logs=tuple(data.get("logs") or ()),
        )

    async def incoming_transfers(self, recipient: str, contract: str) -> List[Erc20Transfer]:
        """Recent ERC-20 transfers of *contract* into *recipient*, newest first."""
        result = await self.call(
            "alchemy_getAssetTransfers",
            [
                {
                    "fromBlock": "0x0",
                    "toBlock": "latest",
                    "toAddress": recipient,
                    "contractAddresses": [contract],
                    "category": ["erc20"],
                    "excludeZeroValue": True,
                    "maxCount": "0x3e8",
                    "order": "desc",
                }
            ],
        )
        transfers = (result or {}).get("transfers") or []
        return [Erc20Transfer.from_asset_transfer(t) for t in transfers if isinstance(t, dict)]

    async def aclose(self) -> None:
        await self._http.aclose()
