"""Prometheus metrics for the treasury services."""

from .metrics import get_metric, maybe_start_http_server

__all__ = [
    "get_metric",
    "maybe_start_http_server",
]
