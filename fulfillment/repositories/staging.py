"""DuckDBStore staging methods for raw provider records."""
from __future__ import annotations

from typing import Iterable, List, Optional

from fulfillment.models import ProviderOrder, StagingOrder, UpsertOutcome, utcnow
from fulfillment.observability import get_logger
from fulfillment.repositories.base import (
    decode_json_columns,
    dumps,
    fetch_dict,
    placeholders,
    to_db_ts,
)

logger = get_logger(__name__)

STAGING_COLUMNS = """
    id, account_id, provider, external_order_id, reference, external_status,
    tracking_number, value, recipient, items, raw_payload,
    processed_to_orders, processed_at, linked_order_id
"""


def _staging(row) -> Optional[StagingOrder]:
    if row is None:
        return None
    return StagingOrder.from_row(decode_json_columns(row, "recipient", "items", "raw_payload"))


class StagingStoreMixin:

    async def upsert_staging_order(self, account_id: str, record: ProviderOrder) -> UpsertOutcome:
        """
        Stage one provider record keyed by (account, external id).

        Re-staging refreshes every field and always re-queues the row for
        reconciliation, so a later status change is applied again.
        """
        external_id = record.external_id
        if not external_id:
            logger.debug(f"Skipping {record.provider.value} record without external id")
            return UpsertOutcome.SKIPPED

        now = to_db_ts(utcnow())
        async with self.connection() as conn:
            exists = conn.execute("""
                SELECT COUNT(*) FROM staging_orders
                WHERE account_id = ? AND external_order_id = ?
            """, [account_id, external_id]).fetchone()[0]

            conn.execute("""
                INSERT INTO staging_orders (
                    account_id, provider, external_order_id, reference, external_status,
                    tracking_number, value, recipient, items, raw_payload,
                    processed_to_orders, processed_at, linked_order_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, FALSE, NULL, NULL, ?, ?)
                ON CONFLICT (account_id, external_order_id) DO UPDATE SET
                    provider = excluded.provider,
                    reference = excluded.reference,
                    external_status = excluded.external_status,
                    tracking_number = excluded.tracking_number,
                    value = excluded.value,
                    recipient = excluded.recipient,
                    items = excluded.items,
                    raw_payload = excluded.raw_payload,
                    processed_to_orders = FALSE,
                    processed_at = NULL,
                    updated_at = excluded.updated_at
            """, [
                account_id,
                record.provider.value,
                external_id,
                record.reference,
                record.status,
                record.tracking_number,
                record.value,
                dumps(record.recipient.to_dict()),
                dumps(record.items),
                dumps(record.raw),
                now,
                now,
            ])

        return UpsertOutcome.UPDATED if exists else UpsertOutcome.CREATED

    async def get_staging_order(self, account_id: str, external_id: str) -> Optional[StagingOrder]:
        async with self.connection() as conn:
            row = fetch_dict(conn, f"""
                SELECT {STAGING_COLUMNS} FROM staging_orders
                WHERE account_id = ? AND external_order_id = ?
            """, [account_id, external_id])
        return _staging(row)

    async def list_unprocessed(
        self,
        account_id: str,
        after_id: int = 0,
        limit: int = 500,
        external_ids: Optional[Iterable[str]] = None,
    ) -> List[StagingOrder]:
        """
        Unprocessed rows for an account in id order, starting after ``after_id``.

        Keyset pagination keeps a sweep moving past rows that stay unmatched.
        """
        query = f"""
            SELECT {STAGING_COLUMNS} FROM staging_orders
            WHERE account_id = ? AND NOT processed_to_orders AND id > ?
        """
        params: list = [account_id, after_id]
        if external_ids is not None:
            ids = list(external_ids)
            if not ids:
                return []
            query += f" AND external_order_id IN ({placeholders(ids)})"
            params.extend(ids)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)

        rows = await self._fetch_all(query, params)
        return [_staging(row) for row in rows]

    async def mark_staging_processed(self, staging_id: int, linked_order_id: str) -> None:
        async with self.connection() as conn:
            conn.execute("""
                UPDATE staging_orders SET
                    processed_to_orders = TRUE,
                    processed_at = ?,
                    linked_order_id = ?
                WHERE id = ?
            """, [to_db_ts(utcnow()), linked_order_id, staging_id])

    async def count_unprocessed(self, account_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM staging_orders WHERE NOT processed_to_orders"
        params = []
        if account_id:
            query += " AND account_id = ?"
            params.append(account_id)
        async with self.connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    async def count_staging(self, account_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM staging_orders"
        params = []
        if account_id:
            query += " WHERE account_id = ?"
            params.append(account_id)
        async with self.connection() as conn:
            return conn.execute(query, params).fetchone()[0]
