#!/usr/bin/env python3
"""
Standalone reconciliation worker.

Runs the reconciliation engine outside the API process. Set
STREAMSYNC_ENGINE_IN_API=false on the API when running this, so assets are
not polled twice.
"""

import asyncio
import logging
import signal
import sys

from api.database import configure_database, database
from api.reconciler import Reconciler
from api.record_store import VideoRecordStore
from config import RECONCILE_CONCURRENCY, RECONCILE_INTERVAL, TRANSIENT_FAILURE_CEILING
from worker.reconcile_engine import ReconciliationEngine
from worker.stream_gateway import StreamGatewayClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("streamsync.worker")


async def worker_loop():
    """Main worker loop: run the engine until SIGTERM/SIGINT."""
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    gateway = StreamGatewayClient()
    if not gateway.is_configured:
        logger.error("STREAMSYNC_STREAM_ACCOUNT_ID and STREAMSYNC_STREAM_API_TOKEN are required")
        sys.exit(1)

    await database.connect()
    await configure_database()

    store = VideoRecordStore(database)
    engine = ReconciliationEngine(store, Reconciler(store, gateway))

    logger.info("Reconciliation worker starting...")
    logger.info(f"  Interval: {RECONCILE_INTERVAL}s")
    logger.info(f"  Concurrency: {RECONCILE_CONCURRENCY}")
    logger.info(f"  Failure ceiling: {TRANSIENT_FAILURE_CEILING or 'disabled'}")

    try:
        await engine.start()
        await shutdown.wait()
        logger.info("Shutdown requested, finishing current tick...")
    finally:
        await engine.stop()
        await gateway.close()
        await database.disconnect()
        logger.info("Reconciliation worker stopped")


def main():
    """Entry point for the reconciliation worker."""
    asyncio.run(worker_loop())


if __name__ == "__main__":
    main()
