#!/usr/bin/env python3
"""
Fulfillment sync worker.

Runs the tier scheduler until interrupted, or a single tier once.

Usage:
    python sync_worker.py
    python sync_worker.py --once fast
"""
import argparse
import asyncio
import signal
import sys

from fulfillment.config import config, validate_config, ConfigurationError
from fulfillment.models import RunStatus, SyncTier
from fulfillment.observability import correlation_context, get_logger, setup_logging
from fulfillment.scheduler import TierScheduler
from fulfillment.store import close_store, get_store
from fulfillment.sync_service import SyncOrchestrator

logger = get_logger("sync_worker")


async def run_once(tier: SyncTier) -> int:
    """Run one tier for all of its accounts; exit code 1 if any run failed."""
    store = await get_store()
    try:
        await store.fail_stale_runs(config.sync.stale_run_minutes)
        with correlation_context():
            runs = await SyncOrchestrator(store).run_tier(tier)
        failed = [r for r in runs if r.status != RunStatus.COMPLETED]
        logger.info(f"{tier.value} sync: {len(runs) - len(failed)}/{len(runs)} accounts completed")
        for run in failed:
            logger.warning(f"Account {run.account_id}: {run.error_message}")
        return 1 if failed else 0
    finally:
        await close_store()


async def run_forever() -> int:
    """Tick until SIGINT/SIGTERM."""
    store = await get_store()
    scheduler = TierScheduler(SyncOrchestrator(store))
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt still stops asyncio.run

    await scheduler.start()
    logger.info("Sync worker running")
    try:
        await stop.wait()
    finally:
        logger.info("Sync worker stopping")
        await scheduler.stop(wait=False)
        await close_store()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Fulfillment order sync worker")
    parser.add_argument(
        "--once",
        choices=[tier.value for tier in SyncTier],
        help="Run a single tier once and exit"
    )
    args = parser.parse_args()

    setup_logging(level=config.log_level, json_format=(config.log_format == "json"))
    try:
        validate_config()
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        return 1

    if args.once:
        return asyncio.run(run_once(SyncTier(args.once)))
    return asyncio.run(run_forever())


if __name__ == "__main__":
    sys.exit(main())
