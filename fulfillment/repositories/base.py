"""Shared row and value helpers for the DuckDB repository mixins."""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import duckdb


def fetch_dicts(
    conn: duckdb.DuckDBPyConnection, query: str, params: list = None
) -> List[Dict[str, Any]]:
    """Run a query and return rows as dicts with UTC-aware timestamps."""
    cursor = conn.execute(query, params or [])
    columns = [d[0] for d in cursor.description]
    rows = []
    for values in cursor.fetchall():
        row = {}
        for column, value in zip(columns, values):
            if isinstance(value, datetime) and value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            row[column] = value
        rows.append(row)
    return rows


def fetch_dict(
    conn: duckdb.DuckDBPyConnection, query: str, params: list = None
) -> Optional[Dict[str, Any]]:
    """First row of ``fetch_dicts`` or None."""
    rows = fetch_dicts(conn, query, params)
    return rows[0] if rows else None


def to_db_ts(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, ensure_ascii=False)


def loads(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def decode_json_columns(row: Optional[Dict[str, Any]], *columns: str) -> Optional[Dict[str, Any]]:
    """Parse JSON text columns in place."""
    if row is None:
        return None
    for column in columns:
        if column in row:
            row[column] = loads(row[column], default=None)
    return row


def placeholders(values: list) -> str:
    return ", ".join("?" for _ in values)
