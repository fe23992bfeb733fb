"""Shared dependencies for API route modules."""
import logging
import time

from slowapi import Limiter
from slowapi.util import get_remote_address

from fulfillment.scheduler import TierScheduler, get_scheduler as _get_scheduler
from fulfillment.store import DuckDBStore, get_store as _get_store

# Shared limiter instance
limiter = Limiter(key_func=get_remote_address)


# Shared logger factory
def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


# Route dependencies (overridable via app.dependency_overrides)
async def get_store() -> DuckDBStore:
    return await _get_store()


def get_scheduler() -> TierScheduler:
    return _get_scheduler()


# Track startup time for uptime calculation
START_TIME = time.time()
