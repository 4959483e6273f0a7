"""Shared HTTP helper for public chain APIs (explorer / JSON-RPC).

Uses `httpx.AsyncClient` with:
* Simple exponential back-off retry on transport errors, 429 and 5xx (max 3 attempts)
* Prometheus counters + histogram (labels: product, endpoint, method, status)
* Failures surfaced as :class:`ChainDataUnavailable` so callers can skip the
  run without mutating state

Network access is *never* used in CI; tests pass `httpx.MockTransport`.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Optional

import httpx
from prometheus_client import Counter, Histogram

from treasury_domain.errors import ChainDataUnavailable
from treasury_observability.metrics import get_metric

__all__ = ["ChainHTTP", "RETRY_STATUSES"]

_LOG = logging.getLogger(__name__)

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})

_REQUESTS_TOTAL = get_metric(
    Counter,
    "chain_http_requests_total",
    "HTTP requests to chain data providers",
    labelnames=["product", "endpoint", "method", "status"],
)
_LATENCY_SEC = get_metric(
    Histogram,
    "chain_http_latency_seconds",
    "Latency for chain data provider HTTP requests",
    labelnames=["product", "endpoint"],
)


class ChainHTTP:
    def __init__(
        self,
        *,
        product: str,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_base: float = 0.1,
    ):
        self._product = product
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    def _delay(self, attempt: int, retry_after: Optional[str] = None) -> float:
        if retry_after and retry_after.isdigit():
            return float(retry_after)
        delay = 2 ** attempt * self._backoff_base
        return delay * (1 + random.random() * 0.2)  # jitter +20%

    async def _request(self, method: str, url: str, *, endpoint: Optional[str] = None, **kwargs) -> httpx.Response:
        # JSON-RPC posts share one URL; callers label them by RPC method instead
        endpoint_label = endpoint or url.split("?", 1)[0]
        attempt = 0
        while True:
            attempt += 1
            start = time.perf_counter()
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.RequestError as exc:
                _REQUESTS_TOTAL.labels(self._product, endpoint_label, method.lower(), "error").inc()
                if attempt >= self._max_attempts:
                    raise ChainDataUnavailable(f"{self._product} {endpoint_label}: {exc}") from exc
                await asyncio.sleep(self._delay(attempt))
                continue
            _LATENCY_SEC.labels(self._product, endpoint_label).observe(time.perf_counter() - start)
            _REQUESTS_TOTAL.labels(self._product, endpoint_label, method.lower(), resp.status_code).inc()
            if resp.status_code in RETRY_STATUSES:
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._delay(attempt, resp.headers.get("Retry-After")))
                    continue
                _LOG.warning(
                    "%s %s gave %s after %s attempts",
                    self._product,
                    endpoint_label,
                    resp.status_code,
                    attempt,
                    extra={"endpoint": endpoint_label},
                )
                raise ChainDataUnavailable(
                    f"{self._product} {endpoint_label}: HTTP {resp.status_code}"
                )
            return resp

    async def get(self, url: str, **kw) -> httpx.Response:
        return await self._request("GET", url, **kw)

    async def post(self, url: str, **kw) -> httpx.Response:
        return await self._request("POST", url, **kw)

    async def aclose(self) -> None:
        await self._client.aclose()

    # context-manager sugar
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
