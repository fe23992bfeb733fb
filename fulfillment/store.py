"""
DuckDB store for fulfillment sync state.

Persists warehouse accounts, operation links, staged provider records,
internal orders touched by reconciliation, and the sync run log.

Domain-specific methods are organized into repository mixins:
- AccountsMixin: Warehouse accounts, initial-sync bookkeeping, operation links
- StagingStoreMixin: Idempotent staging of raw provider records
- OrdersMixin: Match-candidate lookups and carrier updates on internal orders
- SyncRunsMixin: Append-only sync run log
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import duckdb

from fulfillment.config import config
from fulfillment.exceptions import QueryTimeoutError
from fulfillment.observability import get_logger
from fulfillment.repositories import (
    AccountsMixin,
    OrdersMixin,
    StagingStoreMixin,
    SyncRunsMixin,
)
from fulfillment.repositories.base import fetch_dicts

logger = get_logger(__name__)


SCHEMA_SQL = """
-- Warehouse accounts (credentialed provider connections)
CREATE TABLE IF NOT EXISTS warehouse_accounts (
    id VARCHAR PRIMARY KEY,
    provider VARCHAR NOT NULL,
    display_name VARCHAR NOT NULL,
    credentials VARCHAR,                    -- JSON blob, opaque to the engine
    status VARCHAR NOT NULL DEFAULT 'active',
    initial_sync_completed BOOLEAN NOT NULL DEFAULT FALSE,
    initial_sync_completed_at TIMESTAMP,
    initial_sync_status VARCHAR,
    initial_sync_error VARCHAR,
    last_sync_at TIMESTAMP,
    created_at TIMESTAMP
);

-- Account <-> operation links (many-to-many)
CREATE TABLE IF NOT EXISTS account_operations (
    account_id VARCHAR NOT NULL,
    operation_id VARCHAR NOT NULL,
    reference_prefix VARCHAR,
    is_default BOOLEAN NOT NULL DEFAULT FALSE,
    PRIMARY KEY (account_id, operation_id)
);

-- Internal orders (owned by the platform; only carrier fields are written here)
CREATE TABLE IF NOT EXISTS orders (
    id VARCHAR PRIMARY KEY,
    operation_id VARCHAR NOT NULL,
    order_number VARCHAR,
    customer_name VARCHAR,
    customer_phone VARCHAR,
    customer_email VARCHAR,
    customer_city VARCHAR,
    status VARCHAR NOT NULL DEFAULT 'pending',
    tracking_number VARCHAR,
    carrier_account_id VARCHAR,
    carrier_order_id VARCHAR,
    carrier_matched_at TIMESTAMP,
    provider_data VARCHAR,                  -- JSON, keyed by provider
    last_status_update TIMESTAMP,
    created_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_orders_operation ON orders(operation_id);
CREATE INDEX IF NOT EXISTS idx_orders_number ON orders(order_number);

-- Staged provider records, one row per (account, external id)
CREATE SEQUENCE IF NOT EXISTS staging_orders_id_seq START 1;

CREATE TABLE IF NOT EXISTS staging_orders (
    id BIGINT PRIMARY KEY DEFAULT nextval('staging_orders_id_seq'),
    account_id VARCHAR NOT NULL,
    provider VARCHAR NOT NULL,
    external_order_id VARCHAR NOT NULL,
    reference VARCHAR,
    external_status VARCHAR,
    tracking_number VARCHAR,
    value DOUBLE,
    recipient VARCHAR,                      -- JSON
    items VARCHAR,                          -- JSON
    raw_payload VARCHAR,                    -- JSON, verbatim provider record
    processed_to_orders BOOLEAN NOT NULL DEFAULT FALSE,
    processed_at TIMESTAMP,
    linked_order_id VARCHAR,
    created_at TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE (account_id, external_order_id)
);

-- Sync run log (append-only)
CREATE TABLE IF NOT EXISTS sync_runs (
    id VARCHAR PRIMARY KEY,
    account_id VARCHAR NOT NULL,
    sync_type VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    orders_processed INTEGER NOT NULL DEFAULT 0,
    orders_created INTEGER NOT NULL DEFAULT 0,
    orders_updated INTEGER NOT NULL DEFAULT 0,
    orders_skipped INTEGER NOT NULL DEFAULT 0,
    windows_total INTEGER NOT NULL DEFAULT 0,
    windows_failed INTEGER NOT NULL DEFAULT 0,
    hit_page_ceiling BOOLEAN NOT NULL DEFAULT FALSE,
    duration_ms DOUBLE,
    error_message VARCHAR,
    started_at TIMESTAMP NOT NULL,
    completed_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_account ON sync_runs(account_id);
"""


class DuckDBStore(AccountsMixin, StagingStoreMixin, OrdersMixin, SyncRunsMixin):
    """
    Async-compatible DuckDB store for sync state.

    Every statement goes through one connection under an asyncio lock.
    Point reads and writes run inline; the scans that grow with the data
    (unprocessed staging batches, match-candidate lookups) go through
    ``_fetch_all``, which runs them on a single worker thread and
    interrupts them after ``query_timeout`` seconds.
    """

    def __init__(self, db_path: Optional[Path] = None, query_timeout: Optional[float] = None):
        self.db_path = Path(db_path) if db_path else config.store.db_path
        self.query_timeout = query_timeout or config.store.query_timeout
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()  # Serializes all database access
        self._executor: Optional[ThreadPoolExecutor] = None

    async def connect(self) -> None:
        """Initialize database connection, schema, and thread pool."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            if self._connection is None:
                self._connection = duckdb.connect(str(self.db_path))
                self._connection.execute(SCHEMA_SQL)

                self._executor = ThreadPoolExecutor(
                    max_workers=1,  # Single worker - DuckDB requires serialized access
                    thread_name_prefix="duckdb"
                )

                logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection and thread pool."""
        async with self._lock:
            if self._executor:
                self._executor.shutdown(wait=True)
                self._executor = None

            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    @asynccontextmanager
    async def connection(self):
        """Get database connection, connecting lazily.

        Acquires lock to ensure single-threaded DuckDB access.
        DuckDB connections are NOT thread-safe - only one thread can use
        a connection at a time.
        """
        if self._connection is None:
            await self.connect()
        async with self._lock:
            yield self._connection

    # ─── Query Execution with Timeout ────────────────────────────────────────

    async def _fetch_all(
        self,
        query: str,
        params: list = None,
        timeout: float = None,
    ) -> List[Dict[str, Any]]:
        """
        Execute query in the worker thread and return rows as dicts.

        Raises:
            QueryTimeoutError: If query exceeds timeout
        """
        timeout = timeout or self.query_timeout
        async with self.connection() as conn:
            loop = asyncio.get_running_loop()
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(self._executor, fetch_dicts, conn, query, params),
                    timeout=timeout
                )
            except asyncio.TimeoutError:
                conn.interrupt()
                raise QueryTimeoutError(query, timeout, "interrupted")

    async def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        async with self.connection() as conn:
            accounts = conn.execute("SELECT COUNT(*) FROM warehouse_accounts").fetchone()[0]
            staged = conn.execute("SELECT COUNT(*) FROM staging_orders").fetchone()[0]
            unprocessed = conn.execute(
                "SELECT COUNT(*) FROM staging_orders WHERE NOT processed_to_orders"
            ).fetchone()[0]
            linked = conn.execute(
                "SELECT COUNT(*) FROM orders WHERE carrier_order_id IS NOT NULL"
            ).fetchone()[0]
            runs = conn.execute("SELECT COUNT(*) FROM sync_runs").fetchone()[0]

        return {
            "accounts": accounts,
            "staging_orders": staged,
            "staging_unprocessed": unprocessed,
            "orders_linked": linked,
            "sync_runs": runs,
            "db_size_mb": (
                round(self.db_path.stat().st_size / 1024 / 1024, 2)
                if str(self.db_path) != ":memory:" and self.db_path.exists() else 0
            ),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_store_instance: Optional[DuckDBStore] = None
_store_lock = asyncio.Lock()


async def get_store() -> DuckDBStore:
    """Get singleton DuckDB store instance (coroutine-safe)."""
    global _store_instance
    async with _store_lock:
        if _store_instance is None:
            _store_instance = DuckDBStore()
            await _store_instance.connect()
    return _store_instance


async def close_store() -> None:
    """Close singleton store instance."""
    global _store_instance
    if _store_instance:
        await _store_instance.close()
        _store_instance = None
