"""Interval scheduling for the queue processor and the chain monitor."""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from common.logging import configure_logging
from fulfillment.providers import SignerProvider, get_signer
from fulfillment.queue_processor import QueueProcessor
from integrations.chain.esplora_client import EsploraClient
from integrations.price_oracle import PriceOracle
from settlement.chain_monitor import ChainMonitor
from treasury_domain.db import SessionFactory, init_db, session_factory
from treasury_observability import maybe_start_http_server

logger = logging.getLogger(__name__)

QUEUE_JOB_ID = "fulfillment_queue"
MONITOR_JOB_ID = "chain_monitor"


def _interval(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def build_scheduler(
    factory: SessionFactory = session_factory,
    *,
    signer: Optional[SignerProvider] = None,
    esplora: Optional[EsploraClient] = None,
    price_oracle: Optional[PriceOracle] = None,
    queue_interval: Optional[int] = None,
    monitor_interval: Optional[int] = None,
) -> AsyncIOScheduler:
    """Return an unstarted scheduler with one job per periodic pass.

    Each job runs at most once at a time; missed runs are coalesced.
    """
    processor = QueueProcessor(factory, signer or get_signer(), price_oracle=price_oracle or PriceOracle())
    monitor = ChainMonitor(esplora or EsploraClient(), factory)

    async def run_queue() -> None:
        report = await processor.run_once()
        logger.info("queue run finished: %s", report.message, extra={"run_id": report.run_id})

    async def run_monitor() -> None:
        report = await monitor.run_once()
        if not report.success:
            logger.warning("chain monitor run failed: %s", report.message)

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_queue,
        "interval",
        seconds=queue_interval or _interval("QUEUE_INTERVAL_SEC", 60),
        id=QUEUE_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_monitor,
        "interval",
        seconds=monitor_interval or _interval("MONITOR_INTERVAL_SEC", 120),
        id=MONITOR_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


async def _serve() -> None:
    scheduler = build_scheduler()
    scheduler.start()
    logger.info("treasury scheduler started")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)


def main() -> None:  # pragma: no cover - long running
    configure_logging(os.getenv("LOG_FORMAT", "json"), service_name="treasury_scheduler")
    maybe_start_http_server()
    init_db()
    asyncio.run(_serve())


if __name__ == "__main__":  # pragma: no cover
    main()
