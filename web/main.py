"""
FastAPI admin application for the fulfillment sync engine.
"""
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse, JSONResponse

from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from web.config import VERSION
from web.routes import api
from web.routes.api._deps import limiter
from web.middleware import RequestLoggingMiddleware, RequestTimeoutMiddleware
from fulfillment.config import config, validate_config, ConfigurationError
from fulfillment.events import events, SyncEvent
from fulfillment.observability import setup_logging, get_logger
from fulfillment.scheduler import start_scheduler, stop_scheduler
from fulfillment.store import get_store, close_store

# Configure structured logging
# Use JSON format in production (LOG_FORMAT=json), human-readable otherwise
setup_logging(level=config.log_level, json_format=(config.log_format == "json"))
logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Fulfillment Sync Admin",
    description="Status, run log and manual triggers for provider order sync",
    version=VERSION,
    default_response_class=ORJSONResponse,
)

# Add rate limiter to app state
app.state.limiter = limiter


# Custom rate limit exceeded handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)}")
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "detail": "Too many requests. Please try again later.",
            "retry_after": exc.detail
        }
    )

# Add request logging middleware (adds correlation IDs and timing)
app.add_middleware(RequestLoggingMiddleware)

# Must be AFTER logging so correlation_id is set when timeout fires
app.add_middleware(RequestTimeoutMiddleware)

# Include routers
app.include_router(api.router, prefix="/api")


@app.on_event("startup")
async def startup_event():
    logger.info("Fulfillment sync admin starting...")

    # Validate configuration early - fail fast with clear errors
    try:
        validate_config()
        logger.info("Configuration validated")
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        raise SystemExit(1)

    try:
        store = await get_store()
        stats = await store.get_stats()
        logger.info(
            f"DuckDB ready: {stats['accounts']} accounts, "
            f"{stats['staging_orders']} staged orders, "
            f"{stats['sync_runs']} sync runs, "
            f"{stats['db_size_mb']} MB"
        )
    except Exception as e:
        logger.error(f"DuckDB initialization failed: {e}", exc_info=True)
        raise  # Fail fast - the store is required

    if config.web.start_scheduler:
        try:
            await start_scheduler()
            logger.info("Sync scheduler started")
        except Exception as e:
            logger.error(f"Scheduler initialization failed: {e}", exc_info=True)
            # Non-fatal - status and run log still work without the scheduler

    _register_event_handlers()
    logger.info("Event handlers registered")


def _register_event_handlers():
    """Register handlers for sync events."""

    @events.on(SyncEvent.RUN_FAILED)
    async def on_run_failed(data: dict):
        logger.warning(
            f"Sync failed: {data.get('sync_type', 'unknown')} for account "
            f"{data.get('account_id')} - {data.get('error', 'unknown error')}"
        )

    @events.on(SyncEvent.WINDOW_OVERFLOW)
    async def on_window_overflow(data: dict):
        logger.warning(
            f"Provider page ceiling reached on {data.get('day')} for account "
            f"{data.get('account_id')}: {data.get('records')} records kept"
        )


@app.on_event("shutdown")
async def shutdown_event():
    # Stop scheduler first; cancelled runs are failed by the stale sweep on next start
    try:
        await stop_scheduler(wait=False)
        logger.info("Scheduler stopped")
    except Exception as e:
        logger.warning(f"Error stopping scheduler: {e}")

    try:
        await close_store()
        logger.info("DuckDB closed")
    except Exception as e:
        logger.warning(f"Error closing DuckDB: {e}")
    logger.info("Fulfillment sync admin stopped")
