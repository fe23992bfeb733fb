"""Health check and metrics endpoints."""
import time

from fastapi import APIRouter, Depends, Request

from fulfillment.observability import get_correlation_id, metrics, Timer
from web.config import VERSION
from web.schemas import HealthResponse, MetricsResponse
from ._deps import limiter, get_logger, get_scheduler, get_store, START_TIME

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health", response_model=HealthResponse)
@limiter.limit("60/minute")
async def health_check(
    request: Request,
    store=Depends(get_store),
    scheduler=Depends(get_scheduler),
):
    """Health check endpoint for Docker/load balancer monitoring."""
    db_latency_ms = None
    try:
        with Timer("health_check_db") as timer:
            store_stats = await store.get_stats()
        store_status = "connected"
        db_latency_ms = round(timer.elapsed_ms, 2)
    except Exception as e:
        logger.warning(f"Health check could not read store stats: {e}")
        store_stats = None
        store_status = f"error: {e}"

    return {
        "status": "healthy" if store_stats is not None else "degraded",
        "version": VERSION,
        "uptime_seconds": int(time.time() - START_TIME),
        "correlation_id": get_correlation_id(),
        "store": {
            "status": store_status,
            "latency_ms": db_latency_ms,
            **(store_stats or {}),
        },
        "scheduler_running": scheduler.is_running,
    }


@router.get("/metrics", response_model=MetricsResponse)
@limiter.limit("60/minute")
async def get_metrics_endpoint(request: Request, scheduler=Depends(get_scheduler)):
    """Get application metrics and recent scheduler jobs."""
    return {
        "uptime_seconds": int(time.time() - START_TIME),
        "correlation_id": get_correlation_id(),
        **metrics.get_stats(),
        "jobs": scheduler.get_job_history(limit=20),
    }
