"""BTC/USD spot price with source fallback and a short-lived cache.

Sources are tried in order (CoinGecko, then Coinbase). A quote outside the
sanity band is treated as a source failure. When every source fails, the
last good quote is served regardless of age; with no quote at all
:class:`PriceUnavailable` is raised.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Callable, Optional, Sequence, Tuple

import httpx

from treasury_domain.errors import PriceUnavailable
from treasury_observability import metrics as met

__all__ = ["PriceOracle", "PriceQuote", "usd_to_btc", "DEFAULT_SOURCES"]

_LOG = logging.getLogger(__name__)

MIN_SANE_PRICE = Decimal("1000")
MAX_SANE_PRICE = Decimal("1000000")
CACHE_TTL_SEC = 15.0


def _coingecko(data: Any) -> Any:
    return data["bitcoin"]["usd"]


def _coinbase(data: Any) -> Any:
    return data["data"]["amount"]


# (name, url, extractor)
DEFAULT_SOURCES: Sequence[Tuple[str, str, Callable[[Any], Any]]] = (
    ("coingecko", "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd", _coingecko),
    ("coinbase", "https://api.coinbase.com/v2/prices/BTC-USD/spot", _coinbase),
)


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    source: str
    fetched_at: float
    stale: bool = False


def usd_to_btc(usd: Decimal, price: Decimal) -> Decimal:
    """Convert USD to BTC at *price*, rounded down to the satoshi."""
    if price <= 0:
        raise ValueError("price must be positive")
    return (Decimal(usd) / price).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)


class PriceOracle:
    def __init__(
        self,
        *,
        sources: Sequence[Tuple[str, str, Callable[[Any], Any]]] = DEFAULT_SOURCES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ttl_seconds: float = CACHE_TTL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sources = sources
        self._transport = transport
        self._ttl = ttl_seconds
        self._clock = clock
        self._cached: Optional[PriceQuote] = None

    async def _fetch(self, client: httpx.AsyncClient, name: str, url: str, extract) -> Optional[Decimal]:
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            price = Decimal(str(extract(resp.json())))
        except (httpx.HTTPError, KeyError, TypeError, ValueError, InvalidOperation) as exc:
            met.price_source_failures_total.labels(source=name).inc()
            _LOG.warning("price source %s failed: %s", name, exc)
            return None
        if not (MIN_SANE_PRICE <= price <= MAX_SANE_PRICE):
            met.price_source_failures_total.labels(source=name).inc()
            _LOG.warning("price source %s returned out-of-band quote %s", name, price)
            return None
        return price

    async def btc_usd(self) -> PriceQuote:
        now = self._clock()
        if self._cached and now - self._cached.fetched_at < self._ttl:
            return self._cached

        async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
            for name, url, extract in self._sources:
                price = await self._fetch(client, name, url, extract)
                if price is not None:
                    self._cached = PriceQuote(price=price, source=name, fetched_at=now)
                    return self._cached

        if self._cached is not None:
            _LOG.warning("all price sources failed; serving cached quote from %s", self._cached.source)
            return PriceQuote(
                price=self._cached.price,
                source=self._cached.source,
                fetched_at=self._cached.fetched_at,
                stale=True,
            )
        raise PriceUnavailable("no BTC/USD price available from any source")
