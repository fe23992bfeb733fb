"""DuckDBStore sync run log methods."""
from __future__ import annotations

import uuid
from datetime import timedelta
from typing import List, Optional

from fulfillment.models import RunStatus, SyncRun, SyncTier, utcnow
from fulfillment.observability import get_logger
from fulfillment.repositories.base import fetch_dict, fetch_dicts, to_db_ts

logger = get_logger(__name__)

RUN_COLUMNS = """
    id, account_id, sync_type, status, orders_processed, orders_created,
    orders_updated, orders_skipped, windows_total, windows_failed,
    hit_page_ceiling, duration_ms, error_message, started_at, completed_at
"""


class SyncRunsMixin:

    async def start_sync_run(self, account_id: str, sync_type: SyncTier) -> SyncRun:
        """Open a run in ``started`` state."""
        run = SyncRun(
            id=uuid.uuid4().hex,
            account_id=account_id,
            sync_type=SyncTier(sync_type),
            started_at=utcnow(),
        )
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO sync_runs (id, account_id, sync_type, status, started_at)
                VALUES (?, ?, ?, ?, ?)
            """, [run.id, account_id, run.sync_type.value, RunStatus.STARTED.value,
                  to_db_ts(run.started_at)])
        return run

    async def finish_sync_run(self, run: SyncRun) -> bool:
        """
        Write the terminal state of a run.

        Only ``started`` runs transition, so a run closed by the stale sweep
        stays as it was. Returns False when nothing was updated.
        """
        if run.status == RunStatus.STARTED:
            raise ValueError("finish_sync_run needs a terminal status")
        run.completed_at = run.completed_at or utcnow()
        async with self.connection() as conn:
            updated = conn.execute("""
                UPDATE sync_runs SET
                    status = ?,
                    orders_processed = ?,
                    orders_created = ?,
                    orders_updated = ?,
                    orders_skipped = ?,
                    windows_total = ?,
                    windows_failed = ?,
                    hit_page_ceiling = ?,
                    duration_ms = ?,
                    error_message = ?,
                    completed_at = ?
                WHERE id = ? AND status = ?
                RETURNING id
            """, [
                run.status.value,
                run.orders_processed,
                run.orders_created,
                run.orders_updated,
                run.orders_skipped,
                run.windows_total,
                run.windows_failed,
                run.hit_page_ceiling,
                run.duration_ms,
                run.error_message,
                to_db_ts(run.completed_at),
                run.id,
                RunStatus.STARTED.value,
            ]).fetchall()
        if not updated:
            logger.warning(f"Sync run {run.id} was already closed")
        return bool(updated)

    async def get_sync_run(self, run_id: str) -> Optional[SyncRun]:
        async with self.connection() as conn:
            row = fetch_dict(conn, f"SELECT {RUN_COLUMNS} FROM sync_runs WHERE id = ?", [run_id])
        return SyncRun.from_row(row) if row else None

    async def list_sync_runs(
        self, account_id: Optional[str] = None, limit: int = 50
    ) -> List[SyncRun]:
        """Most recent runs first."""
        query = f"SELECT {RUN_COLUMNS} FROM sync_runs"
        params: list = []
        if account_id:
            query += " WHERE account_id = ?"
            params.append(account_id)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        async with self.connection() as conn:
            rows = fetch_dicts(conn, query, params)
        return [SyncRun.from_row(row) for row in rows]

    async def latest_sync_run(
        self, account_id: str, sync_type: Optional[SyncTier] = None
    ) -> Optional[SyncRun]:
        query = f"SELECT {RUN_COLUMNS} FROM sync_runs WHERE account_id = ?"
        params: list = [account_id]
        if sync_type:
            query += " AND sync_type = ?"
            params.append(SyncTier(sync_type).value)
        query += " ORDER BY started_at DESC LIMIT 1"
        async with self.connection() as conn:
            row = fetch_dict(conn, query, params)
        return SyncRun.from_row(row) if row else None

    async def fail_stale_runs(self, older_than_minutes: int) -> int:
        """Close runs left in ``started`` by a crashed worker."""
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        async with self.connection() as conn:
            rows = conn.execute("""
                UPDATE sync_runs SET
                    status = ?,
                    error_message = 'abandoned: worker stopped before completion',
                    completed_at = ?
                WHERE status = ? AND started_at < ?
                RETURNING id
            """, [
                RunStatus.FAILED.value,
                to_db_ts(utcnow()),
                RunStatus.STARTED.value,
                to_db_ts(cutoff),
            ]).fetchall()
        if rows:
            logger.warning(f"Marked {len(rows)} stale sync run(s) as failed")
        return len(rows)
