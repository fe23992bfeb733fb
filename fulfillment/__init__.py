"""
Multi-provider fulfillment order sync engine.

This package contains the engine shared by the worker process and the
admin API:
- providers: Adapters for each warehouse/carrier API
- status_mapper: Provider status vocabularies -> internal status
- window_fetcher: Paginated fetch with automatic window splitting
- store: DuckDB persistence (staging, orders, sync runs)
- reconciler: Staging -> internal order matching
- sync_service: Per-account sync runs
- scheduler: Tier selection and background execution
"""

# Import in dependency order
from fulfillment.exceptions import (
    AccountNotFoundError,
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
    ProviderError,
    QueryTimeoutError,
    SyncInProgressError,
    UnknownProviderError,
    ValidationError,
)

from fulfillment.config import config

from fulfillment.models import (
    InternalStatus,
    ProviderKey,
    RunStatus,
    SyncTier,
    SyncWindow,
    WarehouseAccount,
)

from fulfillment.status_mapper import map_record_status, map_status

__all__ = [
    # Exceptions
    "AccountNotFoundError",
    "ProviderError",
    "ProviderConnectionError",
    "ProviderAuthError",
    "ProviderAPIError",
    "ProviderDataError",
    "UnknownProviderError",
    "ValidationError",
    "QueryTimeoutError",
    "SyncInProgressError",
    # Models
    "InternalStatus",
    "ProviderKey",
    "RunStatus",
    "SyncTier",
    "SyncWindow",
    "WarehouseAccount",
    # Status mapping
    "map_status",
    "map_record_status",
    # Config
    "config",
]
