"""
Pydantic request/response models for the admin API.

Provides type-safe models with automatic validation and documentation.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from fulfillment.models import SyncTier


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK
# ═══════════════════════════════════════════════════════════════════════════════

class StoreStats(BaseModel):
    """DuckDB store statistics."""
    status: str
    latency_ms: Optional[float] = None
    accounts: Optional[int] = None
    staging_orders: Optional[int] = None
    staging_unprocessed: Optional[int] = None
    orders_linked: Optional[int] = None
    sync_runs: Optional[int] = None
    db_size_mb: Optional[float] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status: healthy or degraded")
    version: str = Field(description="Application version")
    uptime_seconds: int = Field(description="Uptime in seconds")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID")
    store: StoreStats
    scheduler_running: bool = Field(False, description="Whether the tick loop is active")


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC RUNS
# ═══════════════════════════════════════════════════════════════════════════════

class SyncRunResponse(BaseModel):
    """One entry of the sync run log."""
    id: str
    account_id: str
    sync_type: str
    status: str
    orders_processed: int = 0
    orders_created: int = 0
    orders_updated: int = 0
    orders_skipped: int = 0
    windows_total: int = 0
    windows_failed: int = 0
    hit_page_ceiling: bool = False
    duration_ms: Optional[float] = None
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class SyncRunsResponse(BaseModel):
    """Recent sync runs, newest first."""
    runs: List[SyncRunResponse]
    count: int


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC STATUS
# ═══════════════════════════════════════════════════════════════════════════════

class CircuitBreakerState(BaseModel):
    """Provider circuit breaker of one account."""
    state: str = Field(description="closed, open or half_open")
    failures: int = 0
    rejected: int = Field(0, description="Requests refused while open")
    retry_in_seconds: float = 0.0
    last_failure_at: Optional[str] = None


class AccountSyncSummary(BaseModel):
    """Sync state of one warehouse account."""
    id: str
    provider: str
    display_name: str
    status: str
    needs_initial_sync: bool
    initial_sync_status: Optional[str] = None
    initial_sync_error: Optional[str] = None
    initial_sync_completed_at: Optional[str] = None
    last_sync_at: Optional[str] = None
    latest_run: Optional[SyncRunResponse] = None
    circuit_breaker: Optional[CircuitBreakerState] = None


class SyncStatusResponse(BaseModel):
    """Scheduler state and per-account summary."""
    scheduler_running: bool
    loop_running: bool
    running: Dict[str, bool] = Field(description="Tier -> currently running")
    last_initial_check: Optional[str] = None
    last_deep: Optional[str] = None
    last_fast: Optional[str] = None
    next_initial_check: Optional[str] = None
    next_deep: Optional[str] = None
    next_fast: Optional[str] = None
    pending_initial: int = Field(0, description="Active accounts waiting for a backfill")
    open_circuits: List[str] = Field(default_factory=list, description="Accounts whose breaker is not closed")
    accounts: List[AccountSyncSummary] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# MANUAL TRIGGER
# ═══════════════════════════════════════════════════════════════════════════════

class TriggerRequest(BaseModel):
    """Manual sync request."""
    sync_type: SyncTier = Field(description="Tier to run: initial, deep or fast")
    account_id: Optional[str] = Field(None, description="Limit the run to one account")


class TriggerResponse(BaseModel):
    """Accepted manual sync."""
    status: str
    sync_type: str
    account_id: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS & EVENTS
# ═══════════════════════════════════════════════════════════════════════════════

class TimingStats(BaseModel):
    """Timing statistics for an operation."""
    count: int
    avg_ms: float
    min_ms: float
    max_ms: float
    p50_ms: Optional[float] = None
    p95_ms: Optional[float] = None


class MetricsResponse(BaseModel):
    """Application metrics response."""
    uptime_seconds: int
    correlation_id: Optional[str] = None
    runs: Dict[str, int] = Field(default_factory=dict)
    orders: Dict[str, Dict[str, int]] = Field(default_factory=dict, description="Staging outcomes per tier")
    requests: Dict[str, int] = Field(default_factory=dict)
    errors: Dict[str, int] = Field(default_factory=dict)
    timing: Dict[str, TimingStats] = Field(default_factory=dict)
    jobs: List[Dict[str, Any]] = Field(default_factory=list)


class EventsResponse(BaseModel):
    """Recent sync lifecycle events, newest last."""
    events: List[Dict[str, Any]]
    count: int
