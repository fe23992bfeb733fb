"""Repository mixins composed into DuckDBStore."""
from fulfillment.repositories.accounts import AccountsMixin
from fulfillment.repositories.orders import OrdersMixin
from fulfillment.repositories.staging import StagingStoreMixin
from fulfillment.repositories.sync_runs import SyncRunsMixin

__all__ = [
    "AccountsMixin",
    "OrdersMixin",
    "StagingStoreMixin",
    "SyncRunsMixin",
]
