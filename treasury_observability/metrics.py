# treasury_observability/metrics.py
"""
Prometheus metrics for the treasury engine.

This module does NOT start a standalone HTTP server.
The admin API exposes metrics by mounting the ASGI exporter:

    from prometheus_client import make_asgi_app
    app.mount("/metrics", make_asgi_app())

The scheduler and CLI processes can run a sidecar server instead: set
METRICS_HTTP_SERVER=1 and call maybe_start_http_server().
"""

import os
import threading
from typing import Any, Dict, Tuple, Type

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ----------------------------
# Optional standalone server
# ----------------------------
_METRICS_PORT = int(os.getenv("METRICS_PORT", "8001"))
_server_started = False
_server_lock = threading.Lock()


def maybe_start_http_server() -> None:
    """
    Start a sidecar metrics HTTP server exactly once,
    but only if METRICS_HTTP_SERVER=1 is set in the environment.
    """
    global _server_started
    if _server_started or os.getenv("METRICS_HTTP_SERVER") != "1":
        return
    with _server_lock:
        if not _server_started and os.getenv("METRICS_HTTP_SERVER") == "1":
            start_http_server(_METRICS_PORT)
            _server_started = True


# ----------------------------
# Registration helper (avoid duplicate collectors)
# ----------------------------
_METRICS: Dict[Tuple[Type[Any], str], Any] = {}


def get_metric(cls: Type[Any], name: str, *args, **kwargs):
    key = (cls, name)
    if key in _METRICS:
        return _METRICS[key]
    metric = cls(name, *args, **kwargs)
    _METRICS[key] = metric
    return metric


# ----------------------------
# Inventory
# ----------------------------

inventory_btc = get_metric(
    Gauge,
    "treasury_inventory_btc",
    "BTC available in inventory lots",
    ["bucket"],  # eligible | locked
)

inventory_allocations_total = get_metric(
    Counter,
    "treasury_inventory_allocations_total",
    "FIFO allocation attempts",
    ["outcome"],  # ok | insufficient | conflict
)

inventory_allocated_sats_total = get_metric(
    Counter,
    "treasury_inventory_allocated_sats_total",
    "Satoshis allocated to fulfillment orders",
)

inventory_reversals_total = get_metric(
    Counter,
    "treasury_inventory_reversals_total",
    "Allocation reversals that restored inventory",
)

low_inventory_alerts_total = get_metric(
    Counter,
    "treasury_low_inventory_alerts_total",
    "Queue runs that ended below the low-inventory threshold",
)

# ----------------------------
# Fulfillment
# ----------------------------

fulfillment_transitions_total = get_metric(
    Counter,
    "treasury_fulfillment_transitions_total",
    "Fulfillment order state transitions",
    ["from_status", "to_status"],
)

queue_runs_total = get_metric(
    Counter,
    "treasury_queue_runs_total",
    "Queue processor runs",
    ["outcome"],  # ok | paused | error
)

queue_run_latency_seconds = get_metric(
    Histogram,
    "treasury_queue_run_latency_seconds",
    "Latency of a full queue processor run in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

signer_send_latency_seconds = get_metric(
    Histogram,
    "treasury_signer_send_latency_seconds",
    "Latency of custody signer send calls in seconds",
    ["provider", "outcome"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

btc_sent_sats_total = get_metric(
    Counter,
    "treasury_btc_sent_sats_total",
    "Satoshis broadcast to customers",
)

# ----------------------------
# Settlement
# ----------------------------

usdc_verifications_total = get_metric(
    Counter,
    "treasury_usdc_verifications_total",
    "On-chain USDC transfer verification attempts",
    ["outcome"],  # verified | pending | mismatch | replay | error
)

chain_monitor_events_total = get_metric(
    Counter,
    "treasury_chain_monitor_events_total",
    "Chain monitor order updates",
    ["kind"],
)

reconciliation_discrepancy_pct = get_metric(
    Gauge,
    "treasury_reconciliation_discrepancy_pct",
    "Latest treasury balance discrepancy in percent",
    ["asset_type"],
)

price_source_failures_total = get_metric(
    Counter,
    "treasury_price_source_failures_total",
    "BTC/USD price source failures",
    ["source"],
)

# ----------------------------
# Audit export
# ----------------------------

audit_export_files_written_total = get_metric(
    Counter,
    "audit_export_files_written_total",
    "Audit export files written",
    ["result"],
)

audit_export_rows_total = get_metric(
    Counter,
    "audit_export_rows_total",
    "Audit rows written to export files",
)

audit_export_duration_seconds = get_metric(
    Histogram,
    "audit_export_duration_seconds",
    "Audit export batch duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

audit_export_backlog = get_metric(
    Gauge,
    "audit_export_backlog",
    "Audit rows not yet exported",
)
