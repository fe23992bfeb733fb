"""DuckDBStore warehouse account and operation-link methods."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fulfillment.models import (
    AccountOperation,
    AccountStatus,
    InitialSyncStatus,
    WarehouseAccount,
    utcnow,
)
from fulfillment.observability import get_logger
from fulfillment.repositories.base import (
    decode_json_columns,
    dumps,
    fetch_dict,
    fetch_dicts,
    to_db_ts,
)

logger = get_logger(__name__)

ACCOUNT_COLUMNS = """
    id, provider, display_name, credentials, status,
    initial_sync_completed, initial_sync_completed_at,
    initial_sync_status, initial_sync_error, last_sync_at, created_at
"""


def _account(row) -> Optional[WarehouseAccount]:
    if row is None:
        return None
    return WarehouseAccount.from_row(decode_json_columns(row, "credentials"))


class AccountsMixin:

    async def add_account(self, account: WarehouseAccount) -> WarehouseAccount:
        """Insert or replace a warehouse account."""
        created_at = account.created_at or utcnow()
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO warehouse_accounts (
                    id, provider, display_name, credentials, status,
                    initial_sync_completed, initial_sync_completed_at,
                    initial_sync_status, initial_sync_error, last_sync_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    provider = excluded.provider,
                    display_name = excluded.display_name,
                    credentials = excluded.credentials,
                    status = excluded.status
            """, [
                account.id,
                account.provider.value,
                account.display_name,
                dumps(account.credentials or {}),
                account.status.value,
                account.initial_sync_completed,
                to_db_ts(account.initial_sync_completed_at),
                account.initial_sync_status.value if account.initial_sync_status else None,
                account.initial_sync_error,
                to_db_ts(account.last_sync_at),
                to_db_ts(created_at),
            ])
        account.created_at = created_at
        return account

    async def get_account(self, account_id: str) -> Optional[WarehouseAccount]:
        """Get account by ID."""
        async with self.connection() as conn:
            row = fetch_dict(
                conn,
                f"SELECT {ACCOUNT_COLUMNS} FROM warehouse_accounts WHERE id = ?",
                [account_id],
            )
        return _account(row)

    async def list_accounts(self, active_only: bool = False) -> List[WarehouseAccount]:
        """List accounts, oldest first."""
        query = f"SELECT {ACCOUNT_COLUMNS} FROM warehouse_accounts"
        params = []
        if active_only:
            query += " WHERE status = ?"
            params.append(AccountStatus.ACTIVE.value)
        query += " ORDER BY created_at, id"
        async with self.connection() as conn:
            rows = fetch_dicts(conn, query, params)
        return [_account(row) for row in rows]

    async def list_accounts_needing_initial_sync(self) -> List[WarehouseAccount]:
        """Active accounts whose historical backfill has not completed."""
        async with self.connection() as conn:
            rows = fetch_dicts(conn, f"""
                SELECT {ACCOUNT_COLUMNS} FROM warehouse_accounts
                WHERE status = ? AND NOT initial_sync_completed
                ORDER BY created_at, id
            """, [AccountStatus.ACTIVE.value])
        return [_account(row) for row in rows]

    async def count_accounts_needing_initial_sync(self) -> int:
        async with self.connection() as conn:
            return conn.execute("""
                SELECT COUNT(*) FROM warehouse_accounts
                WHERE status = ? AND NOT initial_sync_completed
            """, [AccountStatus.ACTIVE.value]).fetchone()[0]

    async def set_initial_sync_status(
        self,
        account_id: str,
        status: InitialSyncStatus,
        error: Optional[str] = None,
    ) -> None:
        """Record backfill progress; ``completed`` also sets the completion flag."""
        completed = status == InitialSyncStatus.COMPLETED
        async with self.connection() as conn:
            if completed:
                conn.execute("""
                    UPDATE warehouse_accounts SET
                        initial_sync_status = ?,
                        initial_sync_error = NULL,
                        initial_sync_completed = TRUE,
                        initial_sync_completed_at = ?
                    WHERE id = ?
                """, [status.value, to_db_ts(utcnow()), account_id])
            else:
                conn.execute("""
                    UPDATE warehouse_accounts SET
                        initial_sync_status = ?,
                        initial_sync_error = ?
                    WHERE id = ?
                """, [status.value, error, account_id])

    async def touch_last_sync(self, account_id: str, at: Optional[datetime] = None) -> None:
        async with self.connection() as conn:
            conn.execute(
                "UPDATE warehouse_accounts SET last_sync_at = ? WHERE id = ?",
                [to_db_ts(at or utcnow()), account_id],
            )

    async def reset_initial_sync(self, account_id: str) -> bool:
        """Clear the backfill flag so the next tick re-runs the initial tier."""
        async with self.connection() as conn:
            exists = conn.execute(
                "SELECT COUNT(*) FROM warehouse_accounts WHERE id = ?", [account_id]
            ).fetchone()[0]
            if not exists:
                return False
            conn.execute("""
                UPDATE warehouse_accounts SET
                    initial_sync_completed = FALSE,
                    initial_sync_completed_at = NULL,
                    initial_sync_status = ?,
                    initial_sync_error = NULL
                WHERE id = ?
            """, [InitialSyncStatus.PENDING.value, account_id])
        logger.info(f"Initial sync reset for account {account_id}")
        return True

    # ─── Operation links ────────────────────────────────────────────────────

    async def link_operation(self, link: AccountOperation) -> None:
        """Insert or update an account <-> operation link."""
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO account_operations (account_id, operation_id, reference_prefix, is_default)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (account_id, operation_id) DO UPDATE SET
                    reference_prefix = excluded.reference_prefix,
                    is_default = excluded.is_default
            """, [link.account_id, link.operation_id, link.reference_prefix, link.is_default])

    async def list_operations(self, account_id: str) -> List[AccountOperation]:
        """Operations served by an account, longest prefix first."""
        async with self.connection() as conn:
            rows = fetch_dicts(conn, """
                SELECT account_id, operation_id, reference_prefix, is_default
                FROM account_operations
                WHERE account_id = ?
                ORDER BY length(coalesce(reference_prefix, '')) DESC, operation_id
            """, [account_id])
        return [AccountOperation.from_row(row) for row in rows]
