"""
Tiered sync scheduler using APScheduler.

A single interval job (the tick, every 60 seconds) decides which tier to
run, highest priority first:

- Initial: historical backfill for accounts that never completed one
  (checked hourly, skipped when no account needs it)
- Deep: 30-day lookback at fixed UTC hours (06:00 and 18:00)
- Fast: 10-day lookback every 30 minutes

At most one tier starts per tick and no tier starts while another is
running, so an account is never synced by two runs at once. A deep run
covers the fast lookback and resets the fast timer.

Features:
- Reentrancy state held in one SchedulerState owned by the scheduler
- Tier runs in background tasks so the tick never blocks
- Job execution history
- Manual triggers that return immediately
- Stale run sweep at startup
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fulfillment.config import SyncConfig, config
from fulfillment.exceptions import AccountNotFoundError, SyncInProgressError, ValidationError
from fulfillment.models import InitialSyncStatus, RunStatus, SyncTier, utcnow
from fulfillment.observability import correlation_context, get_logger
from fulfillment.resilience import breakers
from fulfillment.store import get_store
from fulfillment.sync_service import SyncOrchestrator

logger = get_logger(__name__)

TICK_JOB_ID = "sync_tick"


class JobStatus(Enum):
    """Job execution status."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of a job execution."""
    job_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: JobStatus = JobStatus.RUNNING
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "result": self.result,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SCHEDULER STATE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SchedulerState:
    """
    Last-run timestamps and reentrancy flags.

    Owned by one TierScheduler and mutated only through these methods.
    """
    sync_config: SyncConfig = field(default_factory=lambda: config.sync)
    last_initial_check: Optional[datetime] = None
    last_deep: Optional[datetime] = None
    last_fast: Optional[datetime] = None
    running: Set[SyncTier] = field(default_factory=set)
    loop_running: bool = False

    @property
    def is_busy(self) -> bool:
        return bool(self.running)

    def is_running(self, tier: SyncTier) -> bool:
        return tier in self.running

    # ─── Due checks ─────────────────────────────────────────────────────────

    def initial_due(self, now: datetime) -> bool:
        interval = timedelta(minutes=self.sync_config.initial_check_minutes)
        return self.last_initial_check is None or now - self.last_initial_check >= interval

    def deep_due(self, now: datetime) -> bool:
        if now.hour not in self.sync_config.deep_hours_utc:
            return False
        gap = timedelta(minutes=self.sync_config.deep_min_gap_minutes)
        return self.last_deep is None or now - self.last_deep >= gap

    def fast_due(self, now: datetime) -> bool:
        interval = timedelta(minutes=self.sync_config.fast_interval_minutes)
        return self.last_fast is None or now - self.last_fast >= interval

    def mark_initial_checked(self, now: datetime) -> None:
        self.last_initial_check = now

    def select_tier(self, now: datetime, initial_pending: bool = False) -> Optional[SyncTier]:
        """
        Tier to start on this tick, or None.

        ``initial_pending`` tells whether an hourly initial check found
        accounts waiting for a backfill.
        """
        if self.is_busy:
            return None
        if initial_pending:
            return SyncTier.INITIAL
        if self.deep_due(now):
            return SyncTier.DEEP
        if self.fast_due(now):
            return SyncTier.FAST
        return None

    # ─── Reentrancy guard ───────────────────────────────────────────────────

    def blocked_reason(self, tier: SyncTier) -> Optional[str]:
        """Why ``tier`` cannot start now, or None when it can."""
        if tier in self.running:
            return f"{tier.value} sync already running"
        if SyncTier.INITIAL in self.running:
            return "initial sync in progress"
        if self.running:
            busy = ", ".join(sorted(t.value for t in self.running))
            return f"{busy} sync running"
        return None

    def begin(self, tier: SyncTier, now: datetime, touch: bool = True) -> None:
        """
        Claim the slot for ``tier``.

        ``touch`` advances the tier's timer (and the fast timer for deep).

        Raises:
            SyncInProgressError: Another run holds the slot
        """
        reason = self.blocked_reason(tier)
        if reason:
            raise SyncInProgressError(tier.value, reason)
        self.running.add(tier)
        if not touch:
            return
        if tier == SyncTier.INITIAL:
            self.last_initial_check = now
        elif tier == SyncTier.DEEP:
            self.last_deep = now
            self.last_fast = now
        else:
            self.last_fast = now

    def finish(self, tier: SyncTier) -> None:
        self.running.discard(tier)

    # ─── Next run estimates ─────────────────────────────────────────────────

    def next_fast_at(self, now: datetime) -> datetime:
        if self.last_fast is None:
            return now
        return max(now, self.last_fast + timedelta(minutes=self.sync_config.fast_interval_minutes))

    def next_initial_check_at(self, now: datetime) -> datetime:
        if self.last_initial_check is None:
            return now
        return max(now, self.last_initial_check + timedelta(minutes=self.sync_config.initial_check_minutes))

    def next_deep_at(self, now: datetime) -> Optional[datetime]:
        """Start of the next deep slot (``now`` when the current slot is still open)."""
        hours = sorted(self.sync_config.deep_hours_utc)
        if not hours:
            return None
        if self.deep_due(now):
            return now
        for day_offset in range(0, 2):
            day = (now + timedelta(days=day_offset)).date()
            for hour in hours:
                slot = datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)
                if slot > now:
                    return slot
        return None

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        next_deep = self.next_deep_at(now)
        return {
            "loop_running": self.loop_running,
            "running": {tier.value: tier in self.running for tier in SyncTier},
            "last_initial_check": self.last_initial_check.isoformat() if self.last_initial_check else None,
            "last_deep": self.last_deep.isoformat() if self.last_deep else None,
            "last_fast": self.last_fast.isoformat() if self.last_fast else None,
            "next_initial_check": self.next_initial_check_at(now).isoformat(),
            "next_deep": next_deep.isoformat() if next_deep else None,
            "next_fast": self.next_fast_at(now).isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# TIER SCHEDULER
# ═══════════════════════════════════════════════════════════════════════════════

class TierScheduler:
    """
    Drives tier selection from an APScheduler interval job.

    Usage:
        scheduler = TierScheduler()
        await scheduler.start()

        # Later...
        await scheduler.stop()
    """

    def __init__(
        self,
        service: Optional[SyncOrchestrator] = None,
        sync_config: Optional[SyncConfig] = None,
    ):
        self.sync_config = sync_config or config.sync
        self.state = SchedulerState(sync_config=self.sync_config)
        self._service = service
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._tasks: Set[asyncio.Task] = set()
        self._job_history: Dict[str, List[JobExecution]] = {}
        self._max_history = 50  # Keep last N executions per job
        self._started = False

    async def _get_service(self) -> SyncOrchestrator:
        if self._service is None:
            self._service = SyncOrchestrator(await get_store())
        return self._service

    # ─── Lifecycle ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Sweep stale runs, then start ticking."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        service = await self._get_service()
        await service.store.fail_stale_runs(self.sync_config.stale_run_minutes)

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.sync_config.tick_seconds),
            id=TICK_JOB_ID,
            name="Sync Tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._job_history.setdefault(TICK_JOB_ID, [])

        self._scheduler.start()
        self._started = True
        self.state.loop_running = True
        logger.info(f"Sync scheduler started (tick every {self.sync_config.tick_seconds}s)")

    async def stop(self, wait: bool = True) -> None:
        """Stop ticking; with ``wait`` let in-flight tier runs finish."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            self.state.loop_running = False
            logger.info("Sync scheduler stopped")
        if wait:
            await self.wait_idle()
        else:
            for task in list(self._tasks):
                task.cancel()

    async def wait_idle(self) -> None:
        """Wait for every in-flight tier run."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None

    # ─── Tick ───────────────────────────────────────────────────────────────

    async def tick(self) -> Optional[SyncTier]:
        """Evaluate tiers top-down and start at most one. Returns the tier started."""
        with correlation_context():
            now = utcnow()
            if self.state.is_busy:
                logger.debug(f"Tick skipped, running: {sorted(t.value for t in self.state.running)}")
                return None

            initial_pending = False
            if self.state.initial_due(now):
                self.state.mark_initial_checked(now)
                service = await self._get_service()
                pending = await service.store.count_accounts_needing_initial_sync()
                initial_pending = pending > 0
                if pending:
                    logger.info(f"{pending} account(s) need initial sync")

            tier = self.state.select_tier(now, initial_pending=initial_pending)
            if tier is None:
                return None

            self._launch(tier, now)
            return tier

    def _launch(self, tier: SyncTier, now: datetime, account_ids: Optional[List[str]] = None) -> None:
        self.state.begin(tier, now, touch=account_ids is None)
        task = asyncio.create_task(self._run_tier(tier, account_ids), name=f"{tier.value}_sync")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_tier(self, tier: SyncTier, account_ids: Optional[Iterable[str]] = None) -> None:
        job_id = f"{tier.value}_sync"
        execution = JobExecution(job_id=job_id, started_at=utcnow())
        with correlation_context():
            try:
                service = await self._get_service()
                runs = await service.run_tier(tier, account_ids)
                execution.status = JobStatus.SUCCESS
                execution.result = {
                    "accounts": len(runs),
                    "completed": sum(1 for r in runs if r.status == RunStatus.COMPLETED),
                }
            except Exception as e:
                execution.status = JobStatus.FAILED
                execution.error = str(e)
                logger.exception(f"{tier.value.capitalize()} sync tier crashed")
            finally:
                self.state.finish(tier)
                execution.finished_at = utcnow()
                execution.duration_ms = (
                    execution.finished_at - execution.started_at
                ).total_seconds() * 1000
                self._add_execution(job_id, execution)

    # ─── Manual trigger ─────────────────────────────────────────────────────

    async def trigger(self, sync_type: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Start a tier run in the background and return immediately.

        An account-specific initial trigger resets that account's backfill
        flag first so it is picked up.

        Raises:
            ValidationError: Unknown sync type
            AccountNotFoundError: Unknown account id
            SyncInProgressError: The reentrancy guard refused the run
        """
        try:
            tier = SyncTier(sync_type)
        except ValueError:
            raise ValidationError("sync_type", "must be one of initial, deep, fast", sync_type)

        reason = self.state.blocked_reason(tier)
        if reason:
            raise SyncInProgressError(tier.value, reason)

        account_ids = None
        if account_id:
            service = await self._get_service()
            account = await service.store.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            if tier == SyncTier.INITIAL:
                await service.store.reset_initial_sync(account_id)
            account_ids = [account_id]

        self._launch(tier, utcnow(), account_ids)
        logger.info(
            f"Manual {tier.value} sync triggered",
            extra={"account_id": account_id},
        )
        return {"status": "accepted", "sync_type": tier.value, "account_id": account_id}

    # ─── Status ─────────────────────────────────────────────────────────────

    async def status(self) -> Dict[str, Any]:
        """Scheduler state plus a per-account sync summary."""
        service = await self._get_service()
        store = service.store
        accounts = await store.list_accounts()

        summaries = []
        for account in accounts:
            latest = await store.latest_sync_run(account.id)
            summaries.append({
                "id": account.id,
                "provider": account.provider.value,
                "display_name": account.display_name,
                "status": account.status.value,
                "needs_initial_sync": account.needs_initial_sync,
                "initial_sync_status": (
                    account.initial_sync_status.value
                    if account.initial_sync_status else InitialSyncStatus.PENDING.value
                ),
                "initial_sync_error": account.initial_sync_error,
                "initial_sync_completed_at": (
                    account.initial_sync_completed_at.isoformat()
                    if account.initial_sync_completed_at else None
                ),
                "last_sync_at": account.last_sync_at.isoformat() if account.last_sync_at else None,
                "latest_run": latest.to_dict() if latest else None,
                "circuit_breaker": breakers.state_of(account.id),
            })

        return {
            **self.state.to_dict(),
            "scheduler_running": self.is_running,
            "pending_initial": sum(1 for a in accounts if a.needs_initial_sync),
            "open_circuits": breakers.open_accounts(),
            "accounts": summaries,
        }

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        """Tick finished (the tier it started may still be running)."""
        logger.debug(f"Job {event.job_id} executed")

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        error = str(event.exception) if event.exception else "Unknown error"
        self._add_execution(event.job_id, JobExecution(
            job_id=event.job_id,
            started_at=utcnow(),
            finished_at=utcnow(),
            status=JobStatus.FAILED,
            error=error,
        ))
        logger.error(f"Job {event.job_id} failed: {error}", extra={"job_id": event.job_id})

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        self._add_execution(event.job_id, JobExecution(
            job_id=event.job_id,
            started_at=utcnow(),
            finished_at=utcnow(),
            status=JobStatus.MISSED,
        ))
        logger.warning(f"Job {event.job_id} missed scheduled execution", extra={"job_id": event.job_id})

    def _add_execution(self, job_id: str, execution: JobExecution) -> None:
        """Add execution to history, keeping only last N."""
        history = self._job_history.setdefault(job_id, [])
        history.append(execution)
        if len(history) > self._max_history:
            self._job_history[job_id] = history[-self._max_history:]

    def get_job_history(self, job_id: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        """Recent executions, newest first (all jobs when ``job_id`` is None)."""
        if job_id is None:
            history = [e for runs in self._job_history.values() for e in runs]
            history.sort(key=lambda e: e.started_at)
        else:
            history = self._job_history.get(job_id, [])
        return [e.to_dict() for e in reversed(history[-limit:])]


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_scheduler: Optional[TierScheduler] = None


def get_scheduler() -> TierScheduler:
    """Get the singleton scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = TierScheduler()
    return _scheduler


async def start_scheduler() -> TierScheduler:
    """Start the sync scheduler."""
    scheduler = get_scheduler()
    await scheduler.start()
    return scheduler


async def stop_scheduler(wait: bool = True) -> None:
    """Stop the sync scheduler; without ``wait`` in-flight runs are cancelled."""
    global _scheduler
    if _scheduler:
        await _scheduler.stop(wait=wait)
        _scheduler = None
