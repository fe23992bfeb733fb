"""
Per-account sync orchestration.

One run covers one account and one tier:

    started -> (per window: fetch -> stage -> reconcile) -> completed | failed

A run is ``completed`` only when every window succeeded. Partial progress
(staged rows, reconciled orders, counters) is kept either way since every
write is idempotent; a failed initial run simply leaves the backfill flag
unset so the next tick retries the whole range.

Usage:
    service = SyncOrchestrator(store)
    run = await service.run(account, SyncTier.FAST)
    runs = await service.run_tier(SyncTier.DEEP)
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable, List, Optional

from fulfillment.config import SyncConfig, config
from fulfillment.events import (
    SyncEvent,
    emit_run_completed,
    emit_run_failed,
    emit_run_started,
    events,
)
from fulfillment.exceptions import ProviderDataError
from fulfillment.models import (
    InitialSyncStatus,
    RunStatus,
    SyncRun,
    SyncTier,
    SyncWindow,
    UpsertOutcome,
    WarehouseAccount,
    build_windows,
    utcnow,
)
from fulfillment.observability import bind_run_id, get_logger, metrics, run_context
from fulfillment.providers import create_adapter
from fulfillment.providers.base import ProviderAdapter
from fulfillment.reconciler import Reconciler
from fulfillment.store import get_store
from fulfillment.window_fetcher import WindowFetcher

logger = get_logger(__name__)

AdapterFactory = Callable[[WarehouseAccount], ProviderAdapter]


@dataclass
class WindowOutcome:
    """Counters for one top-level window."""
    window: SyncWindow
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    complete: bool = True
    hit_page_ceiling: bool = False
    error: Optional[str] = None


class SyncOrchestrator:
    """Runs sync passes for warehouse accounts."""

    def __init__(
        self,
        store,
        adapter_factory: AdapterFactory = create_adapter,
        reconciler: Optional[Reconciler] = None,
        sync_config: Optional[SyncConfig] = None,
        today: Callable[[], date] = None,
    ):
        self.store = store
        self.adapter_factory = adapter_factory
        self.reconciler = reconciler or Reconciler(store)
        self.sync_config = sync_config or config.sync
        self._today = today or (lambda: utcnow().date())

    # ─── Window planning ────────────────────────────────────────────────────

    def initial_lookback_days(self, account: WarehouseAccount, today: date) -> int:
        """Account age clamped to the configured backfill range."""
        cfg = self.sync_config
        return min(max(account.age_days(today), cfg.initial_min_days), cfg.initial_max_days)

    def windows_for(self, account: WarehouseAccount, sync_type: SyncTier, today: date) -> List[SyncWindow]:
        cfg = self.sync_config
        if sync_type == SyncTier.INITIAL:
            return build_windows(today, self.initial_lookback_days(account, today), cfg.window_days)
        # Deep and fast each fetch their lookback as a single window
        lookback = cfg.deep_lookback_days if sync_type == SyncTier.DEEP else cfg.fast_lookback_days
        return build_windows(today, lookback, lookback)

    # ─── Account selection ──────────────────────────────────────────────────

    async def accounts_for(
        self, sync_type: SyncTier, account_ids: Optional[Iterable[str]] = None
    ) -> List[WarehouseAccount]:
        """Accounts a tier applies to, optionally narrowed to specific ids."""
        if sync_type == SyncTier.INITIAL:
            accounts = await self.store.list_accounts_needing_initial_sync()
        else:
            accounts = await self.store.list_accounts(active_only=True)
        if account_ids is not None:
            wanted = set(account_ids)
            accounts = [a for a in accounts if a.id in wanted]
        return accounts

    # ─── Tier ───────────────────────────────────────────────────────────────

    async def run_tier(
        self, sync_type: SyncTier, account_ids: Optional[Iterable[str]] = None
    ) -> List[SyncRun]:
        """
        Run one tier across its accounts.

        Accounts run through a bounded pool; each account's windows stay
        sequential.
        """
        sync_type = SyncTier(sync_type)
        accounts = await self.accounts_for(sync_type, account_ids)
        if not accounts:
            logger.debug(f"No accounts for {sync_type.value} sync")
            return []

        await events.emit(
            SyncEvent.TIER_STARTED,
            {"sync_type": sync_type.value, "accounts": len(accounts)},
        )
        started = time.perf_counter()
        semaphore = asyncio.Semaphore(max(self.sync_config.max_parallel_accounts, 1))

        async def run_one(account: WarehouseAccount) -> SyncRun:
            async with semaphore:
                started_at = time.perf_counter()
                try:
                    return await self.run(account, sync_type)
                except Exception as e:
                    # Siblings keep running; this account is reported failed
                    logger.exception(f"Unexpected error syncing account {account.id}")
                    return await self._unrecorded_failure(account, sync_type, e, started_at)

        runs = await asyncio.gather(*(run_one(a) for a in accounts))

        completed = sum(1 for r in runs if r.status == RunStatus.COMPLETED)
        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"{sync_type.value.capitalize()} sync finished: {completed}/{len(runs)} accounts completed",
            extra={"sync_type": sync_type.value, "duration_ms": round(duration_ms, 2)},
        )
        await events.emit(
            SyncEvent.TIER_COMPLETED,
            {
                "sync_type": sync_type.value,
                "accounts": len(runs),
                "completed": completed,
                "failed": len(runs) - completed,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return list(runs)

    # ─── Account run ────────────────────────────────────────────────────────

    async def run(self, account: WarehouseAccount, sync_type: SyncTier) -> SyncRun:
        """
        Run one sync pass for an account. Never raises.

        The returned run is persisted in its terminal state, unless the
        store refused to open it; then it is returned failed and unsaved,
        and the next tick simply tries again.
        """
        sync_type = SyncTier(sync_type)
        with run_context(account.id, sync_type.value):
            started = time.perf_counter()
            try:
                run = await self.store.start_sync_run(account.id, sync_type)
            except Exception as e:
                logger.exception(f"Could not open a {sync_type.value} sync run for account {account.id}")
                return await self._unrecorded_failure(account, sync_type, e, started)

            bind_run_id(run.id)
            logger.info(f"Starting {sync_type.value} sync for account {account.id}")
            await emit_run_started(account.id, sync_type.value, run.id)

            fatal_error: Optional[str] = None
            try:
                if sync_type == SyncTier.INITIAL:
                    await self.store.set_initial_sync_status(account.id, InitialSyncStatus.IN_PROGRESS)
                await asyncio.wait_for(
                    self._execute(account, sync_type, run),
                    timeout=self.sync_config.run_timeout_seconds,
                )
            except asyncio.TimeoutError:
                fatal_error = f"Run timed out after {self.sync_config.run_timeout_seconds:g}s"
                logger.error(fatal_error)
            except Exception as e:
                fatal_error = f"{type(e).__name__}: {e}"
                logger.exception(f"Sync run {run.id} for account {account.id} failed")

            run.duration_ms = round((time.perf_counter() - started) * 1000, 2)
            await self._finalize(account, sync_type, run, fatal_error)
            return run

    async def _unrecorded_failure(
        self, account: WarehouseAccount, sync_type: SyncTier, error: BaseException, started: float
    ) -> SyncRun:
        """Failed run for an account whose run could not be opened or crashed outright."""
        run = SyncRun(
            id=f"unrecorded-{uuid.uuid4().hex[:12]}",
            account_id=account.id,
            sync_type=sync_type,
            status=RunStatus.FAILED,
            error_message=f"{type(error).__name__}: {error}",
            started_at=utcnow(),
            completed_at=utcnow(),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        metrics.record_run(sync_type.value, run.status.value, run.duration_ms)
        metrics.record_error(f"sync_{sync_type.value}")
        await emit_run_failed(account.id, sync_type.value, run.id, run.error_message)
        return run

    async def _execute(self, account: WarehouseAccount, sync_type: SyncTier, run: SyncRun) -> None:
        """Fetch, stage and reconcile every window; counters accumulate on ``run``."""
        windows = self.windows_for(account, sync_type, self._today())
        run.windows_total = len(windows)
        errors: List[str] = []

        adapter = self.adapter_factory(account)
        async with adapter:
            fetcher = WindowFetcher(adapter, page_ceiling=self.sync_config.page_ceiling)
            for window in windows:
                try:
                    outcome = await self._sync_window(account, fetcher, window)
                except Exception as e:
                    logger.exception(f"Window {window} failed for account {account.id}")
                    outcome = WindowOutcome(window=window, complete=False, error=f"{type(e).__name__}: {e}")

                run.orders_processed += outcome.created + outcome.updated
                run.orders_created += outcome.created
                run.orders_updated += outcome.updated
                run.orders_skipped += outcome.skipped
                run.hit_page_ceiling = run.hit_page_ceiling or outcome.hit_page_ceiling
                if not outcome.complete:
                    run.windows_failed += 1
                    errors.append(f"{window}: {outcome.error or 'incomplete'}")

        # Catch rows left unprocessed by earlier runs or by a failed window
        try:
            await self.reconciler.reconcile_account(account)
        except Exception:
            logger.exception(f"Final reconciliation sweep failed for account {account.id}")

        if errors:
            run.error_message = f"{len(errors)} window(s) had errors: " + "; ".join(errors)[:1500]

    async def _sync_window(
        self, account: WarehouseAccount, fetcher: WindowFetcher, window: SyncWindow
    ) -> WindowOutcome:
        result = await fetcher.fetch(window)
        outcome = WindowOutcome(
            window=window,
            fetched=len(result.records),
            skipped=result.skipped,
            complete=result.complete,
            hit_page_ceiling=result.hit_page_ceiling,
            error=result.error,
        )

        staged_ids = []
        for record in result.records:
            try:
                status = await self.store.upsert_staging_order(account.id, record)
            except ProviderDataError as e:
                outcome.skipped += 1
                logger.warning(f"Skipping record {record.external_id}: {e}")
                continue
            if status == UpsertOutcome.CREATED:
                outcome.created += 1
            elif status == UpsertOutcome.UPDATED:
                outcome.updated += 1
            else:
                outcome.skipped += 1
                continue
            staged_ids.append(record.external_id)

        if staged_ids:
            try:
                await self.reconciler.reconcile_account(account, external_ids=staged_ids)
            except Exception:
                # Rows stay unprocessed and are picked up by the final sweep
                logger.exception(f"Reconciliation failed for window {window}")

        logger.info(
            f"Window {window}: {outcome.fetched} fetched, {outcome.created} new, "
            f"{outcome.updated} updated, {outcome.skipped} skipped",
            extra={"complete": outcome.complete},
        )
        return outcome

    async def _finalize(
        self,
        account: WarehouseAccount,
        sync_type: SyncTier,
        run: SyncRun,
        fatal_error: Optional[str],
    ) -> None:
        if fatal_error:
            run.error_message = fatal_error if not run.error_message else f"{fatal_error}; {run.error_message}"
        succeeded = fatal_error is None and run.windows_failed == 0
        run.status = RunStatus.COMPLETED if succeeded else RunStatus.FAILED
        run.completed_at = utcnow()

        try:
            await self.store.finish_sync_run(run)
            if sync_type == SyncTier.INITIAL:
                if succeeded:
                    await self.store.set_initial_sync_status(account.id, InitialSyncStatus.COMPLETED)
                else:
                    await self.store.set_initial_sync_status(
                        account.id, InitialSyncStatus.FAILED, error=run.error_message
                    )
            if succeeded:
                await self.store.touch_last_sync(account.id, run.completed_at)
        except Exception:
            logger.exception(f"Could not record outcome of run {run.id}")

        metrics.record_run(sync_type.value, run.status.value, run.duration_ms or 0)
        metrics.record_orders(sync_type.value, run.orders_created, run.orders_updated, run.orders_skipped)
        if succeeded:
            logger.info(
                f"{sync_type.value.capitalize()} sync completed for account {account.id}: "
                f"{run.orders_processed} processed",
                extra={"duration_ms": run.duration_ms},
            )
            await emit_run_completed(
                account.id, sync_type.value, run.id, run.duration_ms, run.orders_processed,
                hit_page_ceiling=run.hit_page_ceiling,
            )
        else:
            metrics.record_error(f"sync_{sync_type.value}")
            logger.warning(
                f"{sync_type.value.capitalize()} sync failed for account {account.id}: {run.error_message}"
            )
            await emit_run_failed(account.id, sync_type.value, run.id, run.error_message or "")


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_service: Optional[SyncOrchestrator] = None


async def get_sync_service() -> SyncOrchestrator:
    """Get the process-wide orchestrator bound to the shared store."""
    global _service
    if _service is None:
        _service = SyncOrchestrator(await get_store())
    return _service
