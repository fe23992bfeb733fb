#!/usr/bin/env python3
"""
Force an account's historical backfill to run again.

Clears the initial-sync flag so the next scheduler tick (at most an hour
away) picks the account up. With --now the initial sync runs immediately
in this process instead.

Credentials are checked against the provider first (a login plus one page
of today's orders); a failed check leaves the flag untouched.

Usage:
    python scripts/force_resync.py ACCOUNT_ID
    python scripts/force_resync.py ACCOUNT_ID --now
    python scripts/force_resync.py ACCOUNT_ID --skip-check
"""
import asyncio
import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fulfillment.models import SyncTier
from fulfillment.providers import create_adapter
from fulfillment.store import get_store, close_store
from fulfillment.sync_service import SyncOrchestrator

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(account_id: str, run_now: bool = False, check: bool = True) -> int:
    """Reset the backfill flag, optionally running it straight away."""
    store = await get_store()
    try:
        account = await store.get_account(account_id)
        if account is None:
            logger.error(f"Unknown account: {account_id}")
            return 1

        if check:
            async with create_adapter(account) as adapter:
                result = await adapter.test_connection()
            if not result.ok:
                logger.error(f"Connection check failed: {result.message}")
                return 1
            logger.info(result.message)

        staged_before = await store.count_staging(account_id)
        await store.reset_initial_sync(account_id)
        logger.info(
            f"Initial sync reset for {account.display_name} ({account.provider.value}); "
            f"{staged_before} staged orders kept"
        )

        if not run_now:
            logger.info("The scheduler will backfill this account on its next initial check")
            return 0

        service = SyncOrchestrator(store)
        runs = await service.run_tier(SyncTier.INITIAL, account_ids=[account_id])
        if not runs:
            logger.error("Account is not active; nothing was run")
            return 1

        run = runs[0]
        logger.info(
            f"Initial sync {run.status.value}: {run.orders_processed} processed, "
            f"{run.windows_failed}/{run.windows_total} windows failed"
        )
        if run.error_message:
            logger.warning(run.error_message)
        return 0 if run.status.value == "completed" else 1
    finally:
        await close_store()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Force an account's initial sync to run again")
    parser.add_argument("account_id", help="Warehouse account id")
    parser.add_argument(
        "--now",
        action="store_true",
        help="Run the initial sync immediately instead of waiting for the scheduler"
    )
    parser.add_argument(
        "--skip-check",
        action="store_true",
        help="Do not test the provider credentials before resetting"
    )
    args = parser.parse_args()

    exit_code = asyncio.run(main(args.account_id, run_now=args.now, check=not args.skip_check))
    sys.exit(exit_code)
