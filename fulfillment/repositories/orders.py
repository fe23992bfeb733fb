"""DuckDBStore internal-order methods used by reconciliation."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from fulfillment.models import InternalStatus, Order, utcnow
from fulfillment.observability import get_logger
from fulfillment.repositories.base import (
    decode_json_columns,
    dumps,
    fetch_dict,
    loads,
    placeholders,
    to_db_ts,
)

logger = get_logger(__name__)

ORDER_COLUMNS = """
    id, operation_id, order_number, customer_name, customer_phone, customer_email,
    customer_city, status, tracking_number, carrier_account_id, carrier_order_id,
    carrier_matched_at, provider_data, last_status_update, created_at
"""

# Unlinked orders first, then newest
CANDIDATE_ORDER = "ORDER BY (carrier_order_id IS NULL) DESC, created_at DESC NULLS LAST, id"

# Same reduction as reconciler.normalize_phone: drop the extension, keep the last 9 digits
PHONE_SUFFIX_SQL = (
    "right(regexp_replace("
    "regexp_replace(coalesce(customer_phone, ''), '\\s*(ext\\.?|x|#)\\s*[0-9]+\\s*$', '', 'i'), "
    "'[^0-9]', '', 'g'), 9)"
)
NAME_SQL = "lower(strip_accents(trim(regexp_replace(coalesce({col}, ''), '\\s+', ' ', 'g'))))"


def _order(row) -> Optional[Order]:
    if row is None:
        return None
    return Order.from_row(decode_json_columns(row, "provider_data"))


class OrdersMixin:

    async def add_order(self, order: Order) -> Order:
        """Insert an internal order (used by seeding and tests)."""
        created_at = order.created_at or utcnow()
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO orders (
                    id, operation_id, order_number, customer_name, customer_phone,
                    customer_email, customer_city, status, tracking_number,
                    carrier_account_id, carrier_order_id, carrier_matched_at,
                    provider_data, last_status_update, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                order.id,
                order.operation_id,
                order.order_number,
                order.customer_name,
                order.customer_phone,
                order.customer_email,
                order.customer_city,
                order.status.value,
                order.tracking_number,
                order.carrier_account_id,
                order.carrier_order_id,
                to_db_ts(order.carrier_matched_at),
                dumps(order.provider_data or {}),
                to_db_ts(order.last_status_update),
                to_db_ts(created_at),
            ])
        order.created_at = created_at
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self.connection() as conn:
            row = fetch_dict(
                conn, f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = ?", [order_id]
            )
        return _order(row)

    async def _find_orders(
        self, operation_ids: Sequence[str], condition: str, params: list
    ) -> List[Order]:
        if not operation_ids:
            return []
        ops = list(operation_ids)
        query = f"""
            SELECT {ORDER_COLUMNS} FROM orders
            WHERE operation_id IN ({placeholders(ops)}) AND {condition}
            {CANDIDATE_ORDER}
        """
        rows = await self._fetch_all(query, ops + params)
        return [_order(row) for row in rows]

    # ─── Match candidates ───────────────────────────────────────────────────

    async def find_orders_by_reference(
        self, operation_ids: Sequence[str], references: Sequence[str]
    ) -> List[Order]:
        """Orders whose number equals any of the candidate references."""
        refs = [r for r in references if r]
        if not refs:
            return []
        return await self._find_orders(
            operation_ids, f"order_number IN ({placeholders(refs)})", refs
        )

    async def find_orders_by_phone(
        self, operation_ids: Sequence[str], phone_suffix: str
    ) -> List[Order]:
        """Orders whose phone ends in the same nine digits."""
        if not phone_suffix:
            return []
        return await self._find_orders(
            operation_ids, f"{PHONE_SUFFIX_SQL} = ?", [phone_suffix]
        )

    async def find_orders_by_email(
        self, operation_ids: Sequence[str], email: str
    ) -> List[Order]:
        if not email:
            return []
        return await self._find_orders(
            operation_ids, "lower(trim(customer_email)) = ?", [email]
        )

    async def find_orders_by_name_city(
        self, operation_ids: Sequence[str], name: str, city: str
    ) -> List[Order]:
        """Orders with the same normalized customer name and city."""
        if not name or not city:
            return []
        condition = (
            f"{NAME_SQL.format(col='customer_name')} = ? "
            f"AND {NAME_SQL.format(col='customer_city')} = ?"
        )
        return await self._find_orders(operation_ids, condition, [name, city])

    # ─── Carrier updates ────────────────────────────────────────────────────

    async def apply_carrier_update(
        self,
        order_id: str,
        account_id: str,
        carrier_order_id: str,
        status: InternalStatus,
        tracking_number: Optional[str],
        provider: str,
        provider_entry: Dict[str, Any],
    ) -> None:
        """
        Link an order to its provider record and apply the mapped status.

        Tracking is only ever set, never cleared. ``provider_data`` keeps one
        entry per provider so other carriers' data survives.
        """
        now = to_db_ts(utcnow())
        async with self.connection() as conn:
            current = conn.execute(
                "SELECT provider_data FROM orders WHERE id = ?", [order_id]
            ).fetchone()
            if current is None:
                logger.warning(f"Carrier update for missing order {order_id}")
                return
            provider_data = loads(current[0], default={}) or {}
            provider_data[provider] = provider_entry

            conn.execute("""
                UPDATE orders SET
                    status = ?,
                    tracking_number = coalesce(?, tracking_number),
                    carrier_account_id = ?,
                    carrier_order_id = ?,
                    carrier_matched_at = coalesce(carrier_matched_at, ?),
                    provider_data = ?,
                    last_status_update = ?
                WHERE id = ?
            """, [
                status.value,
                tracking_number or None,
                account_id,
                carrier_order_id,
                now,
                dumps(provider_data),
                now,
                order_id,
            ])
