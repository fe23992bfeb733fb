"""
Tests for fulfillment.scheduler module.

SchedulerState is exercised directly; TierScheduler runs against a mocked
orchestrator so no APScheduler loop is needed.
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from fulfillment.config import SyncConfig
from fulfillment.exceptions import AccountNotFoundError, SyncInProgressError, ValidationError
from fulfillment.models import ProviderKey, RunStatus, SyncRun, SyncTier, WarehouseAccount
from fulfillment.resilience import breakers
from fulfillment.scheduler import JobStatus, SchedulerState, TierScheduler

# 10:00 UTC is outside the deep hours below
MORNING = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)
DEEP_SLOT = datetime(2024, 3, 15, 6, 5, tzinfo=timezone.utc)


def sync_config(**overrides) -> SyncConfig:
    values = dict(
        initial_check_minutes=60,
        deep_hours_utc=(6, 18),
        deep_min_gap_minutes=60,
        fast_interval_minutes=30,
        stale_run_minutes=180,
    )
    values.update(overrides)
    return SyncConfig(**values)


def make_service(pending_initial: int = 0, runs=None):
    service = MagicMock()
    service.store.count_accounts_needing_initial_sync = AsyncMock(return_value=pending_initial)
    service.store.fail_stale_runs = AsyncMock(return_value=0)
    service.store.get_account = AsyncMock(return_value=MagicMock(id="acc-1"))
    service.store.reset_initial_sync = AsyncMock(return_value=True)
    service.run_tier = AsyncMock(return_value=runs or [])
    return service


class TestSchedulerState:
    """Tests for tier selection and the reentrancy guard."""

    def setup_method(self):
        self.state = SchedulerState(sync_config=sync_config())

    def test_fresh_state_runs_fast(self):
        """With nothing recorded, fast is due outside deep hours."""
        assert self.state.select_tier(MORNING) == SyncTier.FAST

    def test_initial_has_priority(self):
        """Pending backfills outrank everything."""
        assert self.state.select_tier(DEEP_SLOT, initial_pending=True) == SyncTier.INITIAL

    def test_deep_in_slot(self):
        """Deep runs inside its hour when not run recently."""
        assert self.state.select_tier(DEEP_SLOT) == SyncTier.DEEP

    def test_deep_not_twice_per_slot(self):
        """A deep run blocks another one within the minimum gap."""
        self.state.last_deep = DEEP_SLOT - timedelta(minutes=4)
        self.state.last_fast = DEEP_SLOT - timedelta(minutes=4)
        assert not self.state.deep_due(DEEP_SLOT)
        assert self.state.select_tier(DEEP_SLOT) is None

    def test_fast_interval(self):
        """Fast waits for its interval."""
        self.state.last_fast = MORNING - timedelta(minutes=10)
        assert self.state.select_tier(MORNING) is None
        assert self.state.select_tier(MORNING + timedelta(minutes=20)) == SyncTier.FAST

    def test_nothing_starts_while_busy(self):
        """Any running tier blocks selection."""
        self.state.begin(SyncTier.FAST, MORNING)
        assert self.state.select_tier(MORNING, initial_pending=True) is None

    def test_begin_rejects_same_tier(self):
        """The same tier cannot run twice."""
        self.state.begin(SyncTier.DEEP, MORNING)
        with pytest.raises(SyncInProgressError) as exc_info:
            self.state.begin(SyncTier.DEEP, MORNING)
        assert exc_info.value.reason == "deep sync already running"

    def test_initial_blocks_others(self):
        """Nothing starts while a backfill runs."""
        self.state.begin(SyncTier.INITIAL, MORNING)
        assert self.state.blocked_reason(SyncTier.FAST) == "initial sync in progress"

    def test_finish_releases(self):
        """Finishing frees the slot."""
        self.state.begin(SyncTier.FAST, MORNING)
        self.state.finish(SyncTier.FAST)
        assert self.state.blocked_reason(SyncTier.FAST) is None

    def test_deep_resets_fast_timer(self):
        """Deep covers the fast lookback, so fast waits a full interval after it."""
        self.state.begin(SyncTier.DEEP, DEEP_SLOT)
        assert self.state.last_fast == DEEP_SLOT
        self.state.finish(SyncTier.DEEP)
        assert not self.state.fast_due(DEEP_SLOT + timedelta(minutes=10))

    def test_untouched_begin_keeps_timers(self):
        """Manual account runs do not move the schedule."""
        self.state.begin(SyncTier.FAST, MORNING, touch=False)
        assert self.state.last_fast is None

    def test_next_deep(self):
        """Next deep slot is the next configured hour."""
        assert self.state.next_deep_at(MORNING) == datetime(2024, 3, 15, 18, tzinfo=timezone.utc)
        late = datetime(2024, 3, 15, 19, tzinfo=timezone.utc)
        assert self.state.next_deep_at(late) == datetime(2024, 3, 16, 6, tzinfo=timezone.utc)

    def test_to_dict(self):
        """Serializes flags and timestamps."""
        self.state.begin(SyncTier.FAST, MORNING)
        data = self.state.to_dict(MORNING)
        assert data["running"] == {"initial": False, "deep": False, "fast": True}
        assert data["last_fast"] == MORNING.isoformat()


class TestTierScheduler:
    """Tests for TierScheduler ticks and triggers."""

    @pytest.mark.asyncio
    async def test_tick_runs_initial_when_pending(self):
        """The hourly check finds pending accounts and starts the initial tier."""
        service = make_service(pending_initial=2)
        scheduler = TierScheduler(service, sync_config=sync_config())

        tier = await scheduler.tick()
        await scheduler.wait_idle()

        assert tier == SyncTier.INITIAL
        service.run_tier.assert_awaited_once_with(SyncTier.INITIAL, None)
        assert not scheduler.state.is_busy

    @pytest.mark.asyncio
    async def test_initial_check_is_hourly(self):
        """The pending count is not re-queried on every tick."""
        service = make_service(pending_initial=0)
        scheduler = TierScheduler(service, sync_config=sync_config())

        await scheduler.tick()
        await scheduler.wait_idle()
        await scheduler.tick()
        await scheduler.wait_idle()

        assert service.store.count_accounts_needing_initial_sync.await_count == 1

    @pytest.mark.asyncio
    async def test_tick_skips_while_running(self):
        """A tick during a run starts nothing."""
        release = asyncio.Event()
        service = make_service()

        async def slow_tier(tier, account_ids=None):
            await release.wait()
            return []

        service.run_tier = AsyncMock(side_effect=slow_tier)
        scheduler = TierScheduler(service, sync_config=sync_config())

        first = await scheduler.tick()
        await asyncio.sleep(0)
        second = await scheduler.tick()
        release.set()
        await scheduler.wait_idle()

        assert first is not None
        assert second is None
        assert service.run_tier.await_count == 1

    @pytest.mark.asyncio
    async def test_trigger_returns_immediately(self):
        """Manual triggers are accepted and run in the background."""
        service = make_service(runs=[
            SyncRun(id="r1", account_id="acc-1", sync_type=SyncTier.FAST, status=RunStatus.COMPLETED),
        ])
        scheduler = TierScheduler(service, sync_config=sync_config())

        response = await scheduler.trigger("fast")
        await scheduler.wait_idle()

        assert response == {"status": "accepted", "sync_type": "fast", "account_id": None}
        history = scheduler.get_job_history("fast_sync")
        assert history[0]["status"] == JobStatus.SUCCESS.value
        assert history[0]["result"] == {"accounts": 1, "completed": 1}

    @pytest.mark.asyncio
    async def test_trigger_initial_for_account_resets_flag(self):
        """An account-specific initial trigger forces the backfill."""
        service = make_service()
        scheduler = TierScheduler(service, sync_config=sync_config())

        await scheduler.trigger("initial", account_id="acc-1")
        await scheduler.wait_idle()

        service.store.reset_initial_sync.assert_awaited_once_with("acc-1")
        service.run_tier.assert_awaited_once_with(SyncTier.INITIAL, ["acc-1"])

    @pytest.mark.asyncio
    async def test_trigger_conflict(self):
        """Triggers during a run are refused."""
        scheduler = TierScheduler(make_service(), sync_config=sync_config())
        scheduler.state.begin(SyncTier.DEEP, MORNING)

        with pytest.raises(SyncInProgressError):
            await scheduler.trigger("fast")

    @pytest.mark.asyncio
    async def test_trigger_invalid_type(self):
        """Unknown sync types are validation errors."""
        scheduler = TierScheduler(make_service(), sync_config=sync_config())
        with pytest.raises(ValidationError):
            await scheduler.trigger("hourly")

    @pytest.mark.asyncio
    async def test_trigger_unknown_account(self):
        """Unknown accounts are rejected before anything starts."""
        service = make_service()
        service.store.get_account = AsyncMock(return_value=None)
        scheduler = TierScheduler(service, sync_config=sync_config())

        with pytest.raises(AccountNotFoundError):
            await scheduler.trigger("deep", account_id="ghost")
        assert not scheduler.state.is_busy

    @pytest.mark.asyncio
    async def test_crashed_tier_releases_slot(self):
        """A crashing tier is recorded and frees the guard."""
        service = make_service()
        service.run_tier = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = TierScheduler(service, sync_config=sync_config())

        await scheduler.trigger("fast")
        await scheduler.wait_idle()

        assert not scheduler.state.is_busy
        history = scheduler.get_job_history("fast_sync")
        assert history[0]["status"] == JobStatus.FAILED.value
        assert history[0]["error"] == "boom"

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """Start sweeps stale runs and schedules the tick."""
        service = make_service()
        scheduler = TierScheduler(service, sync_config=sync_config(tick_seconds=3600))

        await scheduler.start()
        try:
            assert scheduler.is_running
            service.store.fail_stale_runs.assert_awaited_once_with(180)
        finally:
            await scheduler.stop()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_status_reports_circuit_breakers(self):
        """Accounts with a tripped provider breaker show up in status."""
        service = make_service()
        service.store.list_accounts = AsyncMock(return_value=[
            WarehouseAccount(id="acc-1", provider=ProviderKey.FHB, display_name="FHB Spain"),
            WarehouseAccount(id="acc-2", provider=ProviderKey.CARTPANDA, display_name="Shop"),
        ])
        service.store.latest_sync_run = AsyncMock(return_value=None)
        breaker = breakers.get("acc-1")
        for _ in range(breaker.config.failure_threshold):
            await breaker.record_failure()
        scheduler = TierScheduler(service, sync_config=sync_config())

        status = await scheduler.status()

        assert status["open_circuits"] == ["acc-1"]
        by_id = {a["id"]: a for a in status["accounts"]}
        assert by_id["acc-1"]["circuit_breaker"]["state"] == "open"
        assert by_id["acc-2"]["circuit_breaker"] is None
        assert status["pending_initial"] == 2
