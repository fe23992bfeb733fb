"""
Centralized configuration for the fulfillment sync engine.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from fulfillment.config import config

    ceiling = config.sync.page_ceiling
    db_path = config.store.db_path
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_hours(name: str, default: str) -> Tuple[int, ...]:
    raw = os.getenv(name, default)
    return tuple(int(h.strip()) for h in raw.split(",") if h.strip())


@dataclass(frozen=True)
class StoreConfig:
    """DuckDB store configuration."""

    db_path: Path = field(
        default_factory=lambda: Path(
            os.getenv("DUCKDB_PATH", str(Path(__file__).parent.parent / "data" / "fulfillment.duckdb"))
        )
    )
    query_timeout: float = field(default_factory=lambda: _env_float("DB_QUERY_TIMEOUT", 30.0))


@dataclass(frozen=True)
class SyncConfig:
    """Tier schedule, window and reconciliation settings."""

    tick_seconds: int = field(default_factory=lambda: _env_int("SYNC_TICK_SECONDS", 60))

    # Pagination / windowing
    page_ceiling: int = field(default_factory=lambda: _env_int("SYNC_PAGE_CEILING", 99))
    window_days: int = field(default_factory=lambda: _env_int("SYNC_WINDOW_DAYS", 30))

    # Initial (historical backfill)
    initial_min_days: int = field(default_factory=lambda: _env_int("INITIAL_SYNC_MIN_DAYS", 90))
    initial_max_days: int = field(default_factory=lambda: _env_int("INITIAL_SYNC_MAX_DAYS", 730))
    initial_check_minutes: int = field(default_factory=lambda: _env_int("INITIAL_CHECK_MINUTES", 60))

    # Deep (twice daily at fixed UTC hours)
    deep_lookback_days: int = field(default_factory=lambda: _env_int("DEEP_SYNC_DAYS", 30))
    deep_hours_utc: Tuple[int, ...] = field(default_factory=lambda: _env_hours("DEEP_SYNC_HOURS_UTC", "6,18"))
    deep_min_gap_minutes: int = 60

    # Fast
    fast_lookback_days: int = field(default_factory=lambda: _env_int("FAST_SYNC_DAYS", 10))
    fast_interval_minutes: int = field(default_factory=lambda: _env_int("FAST_SYNC_INTERVAL_MINUTES", 30))

    # Reconciliation
    reconcile_batch_size: int = field(default_factory=lambda: _env_int("RECONCILE_BATCH_SIZE", 500))

    # Concurrency / deadlines
    max_parallel_accounts: int = field(default_factory=lambda: _env_int("SYNC_MAX_PARALLEL_ACCOUNTS", 1))
    run_timeout_seconds: float = field(default_factory=lambda: _env_float("SYNC_RUN_TIMEOUT_SECONDS", 3600.0))
    stale_run_minutes: int = 180  # runs left "started" longer than this are failed at startup


@dataclass(frozen=True)
class ProviderConfig:
    """Provider HTTP client configuration."""

    fhb_base_url: str = field(
        default_factory=lambda: os.getenv("FHB_API_URL", "https://api.fhb.sk/v3")
    )
    european_base_url: str = field(
        default_factory=lambda: os.getenv("EUROPEAN_FULFILLMENT_API_URL", "https://api.ecomfulfilment.eu/")
    )
    cartpanda_base_url: str = field(
        default_factory=lambda: os.getenv("CARTPANDA_API_URL", "https://accounts.cartpanda.com/api")
    )
    request_timeout: float = field(default_factory=lambda: _env_float("PROVIDER_REQUEST_TIMEOUT", 30.0))
    retry_attempts: int = field(default_factory=lambda: _env_int("PROVIDER_RETRY_ATTEMPTS", 3))
    requests_per_second: float = field(default_factory=lambda: _env_float("PROVIDER_RATE_LIMIT", 5.0))


@dataclass(frozen=True)
class WebConfig:
    """Admin API configuration."""

    host: str = field(default_factory=lambda: os.getenv("WEB_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("WEB_PORT", 8080))
    trigger_rate_limit: str = field(default_factory=lambda: os.getenv("TRIGGER_RATE_LIMIT", "6/minute"))
    start_scheduler: bool = field(
        default_factory=lambda: os.getenv("WEB_START_SCHEDULER", "true").lower() == "true"
    )


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "text"))
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    web: WebConfig = field(default_factory=WebConfig)


# Global config instance
config = AppConfig()

VERSION = config.version


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(app_config: AppConfig = None) -> None:
    """
    Validate configuration values.

    Call this on process startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Raises:
        ConfigurationError: If any value is out of range
    """
    cfg = app_config or config
    sync = cfg.sync
    errors = []

    if sync.tick_seconds <= 0:
        errors.append("SYNC_TICK_SECONDS must be positive")

    if sync.page_ceiling < 1:
        errors.append("SYNC_PAGE_CEILING must be at least 1")

    if sync.window_days < 1:
        errors.append("SYNC_WINDOW_DAYS must be at least 1")

    if sync.initial_min_days > sync.initial_max_days:
        errors.append(
            f"INITIAL_SYNC_MIN_DAYS ({sync.initial_min_days}) exceeds "
            f"INITIAL_SYNC_MAX_DAYS ({sync.initial_max_days})"
        )

    if not sync.deep_hours_utc:
        errors.append("DEEP_SYNC_HOURS_UTC must list at least one hour")
    elif any(h < 0 or h > 23 for h in sync.deep_hours_utc):
        errors.append(f"DEEP_SYNC_HOURS_UTC must be within 0..23 (got {sync.deep_hours_utc})")

    for name, value in (
        ("FAST_SYNC_INTERVAL_MINUTES", sync.fast_interval_minutes),
        ("INITIAL_CHECK_MINUTES", sync.initial_check_minutes),
        ("FAST_SYNC_DAYS", sync.fast_lookback_days),
        ("DEEP_SYNC_DAYS", sync.deep_lookback_days),
        ("RECONCILE_BATCH_SIZE", sync.reconcile_batch_size),
        ("SYNC_MAX_PARALLEL_ACCOUNTS", sync.max_parallel_accounts),
    ):
        if value <= 0:
            errors.append(f"{name} must be positive")

    if sync.run_timeout_seconds <= 0:
        errors.append("SYNC_RUN_TIMEOUT_SECONDS must be positive")

    if cfg.log_format not in ("text", "json"):
        errors.append(f"LOG_FORMAT must be 'text' or 'json' (got {cfg.log_format!r})")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
