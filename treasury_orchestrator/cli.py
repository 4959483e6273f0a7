"""Operator command line for one-shot treasury runs.

Usage:
    python -m treasury_orchestrator.cli process-queue
    python -m treasury_orchestrator.cli monitor
    python -m treasury_orchestrator.cli stats
    python -m treasury_orchestrator.cli export-audit --out-dir ./audit_exports
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from sqlmodel import Session

from common.logging import configure_logging
from treasury_domain import db


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="treasury", description="Treasury inventory and settlement engine")
    ap.add_argument("--db-url", default=None, help="SQLAlchemy database URL (defaults to TREASURY_DB_URL)")
    ap.add_argument("--log-format", default=None, choices=["json", "text"])
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("process-queue", help="Run one fulfillment queue pass")
    sub.add_parser("monitor", help="Run one Bitcoin chain monitor pass")
    sub.add_parser("reconcile-btc", help="Compare treasury wallet balance with the ledger")
    sub.add_parser("stats", help="Print inventory statistics")

    exp = sub.add_parser("export-audit", help="Export unexported audit rows to NDJSON")
    exp.add_argument("--out-dir", default=None)
    exp.add_argument("--batch-size", type=int, default=None)
    exp.add_argument("--max-batches", type=int, default=None)
    exp.add_argument("--dry-run", action="store_true")
    return ap.parse_args(argv)


async def _process_queue(factory) -> dict:
    from fulfillment.providers import get_signer
    from fulfillment.queue_processor import QueueProcessor
    from integrations.price_oracle import PriceOracle

    report = await QueueProcessor(factory, get_signer(), price_oracle=PriceOracle()).run_once()
    return report.as_dict()


async def _monitor(factory) -> dict:
    from integrations.chain.esplora_client import EsploraClient
    from settlement.chain_monitor import ChainMonitor

    esplora = EsploraClient()
    try:
        report = await ChainMonitor(esplora, factory).run_once()
    finally:
        await esplora.aclose()
    return report.as_dict()


async def _reconcile_btc(factory) -> dict:
    from integrations.chain.esplora_client import EsploraClient
    from settlement.balances import reconcile_btc_treasury

    esplora = EsploraClient()
    try:
        rec = await reconcile_btc_treasury(factory, esplora, actor="cli")
    finally:
        await esplora.aclose()
    if rec is None:
        return {"success": False, "message": "Treasury BTC address not configured"}
    return {
        "success": True,
        "status": rec.status.value,
        "onchain_balance": str(rec.onchain_balance),
        "database_balance": str(rec.database_balance),
        "discrepancy_pct": str(rec.discrepancy_pct),
    }


def _stats(factory) -> dict:
    from inventory_ledger.ledger import get_inventory_stats

    with factory() as session:
        return get_inventory_stats(session).as_dict()


def _export_audit(factory, args: argparse.Namespace) -> dict:
    from treasury_orchestrator.audit_exporter import AuditExporter

    kwargs = {}
    if args.out_dir:
        kwargs["out_dir"] = Path(args.out_dir)
    if args.batch_size:
        kwargs["batch_size"] = args.batch_size
    exporter = AuditExporter(factory, **kwargs)
    if args.dry_run:
        return exporter.export_once(dry_run=True)
    return exporter.run_until_empty(max_batches=args.max_batches)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_format, service_name="treasury_cli")

    engine = db.make_engine(args.db_url) if args.db_url else db.engine
    db.init_db(engine)

    def factory() -> Session:
        return Session(engine)

    if args.command == "process-queue":
        result = asyncio.run(_process_queue(factory))
    elif args.command == "monitor":
        result = asyncio.run(_monitor(factory))
    elif args.command == "reconcile-btc":
        result = asyncio.run(_reconcile_btc(factory))
    elif args.command == "stats":
        result = _stats(factory)
    else:
        result = _export_audit(factory, args)

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success", True) else 1


if __name__ == "__main__":
    sys.exit(main())
