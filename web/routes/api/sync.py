"""Sync status, run log, manual trigger and event history."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from fulfillment.events import SyncEvent, events
from fulfillment.exceptions import AccountNotFoundError, SyncInProgressError, ValidationError
from web.config import TRIGGER_RATE_LIMIT
from web.schemas import (
    EventsResponse,
    SyncRunsResponse,
    SyncStatusResponse,
    TriggerRequest,
    TriggerResponse,
)
from ._deps import limiter, get_logger, get_scheduler, get_store

router = APIRouter(prefix="/sync")
logger = get_logger(__name__)


@router.get("/status", response_model=SyncStatusResponse)
@limiter.limit("60/minute")
async def get_sync_status(request: Request, scheduler=Depends(get_scheduler)):
    """Scheduler flags, next run times and per-account sync summary."""
    return await scheduler.status()


@router.get("/runs", response_model=SyncRunsResponse)
@limiter.limit("60/minute")
async def list_sync_runs(
    request: Request,
    account_id: Optional[str] = Query(None, description="Only runs of this account"),
    limit: int = Query(50, ge=1, le=500, description="Maximum runs to return"),
    store=Depends(get_store),
):
    """Recent sync runs, newest first."""
    runs = await store.list_sync_runs(account_id=account_id, limit=limit)
    return {"runs": [run.to_dict() for run in runs], "count": len(runs)}


@router.post("/trigger", response_model=TriggerResponse, status_code=202)
@limiter.limit(TRIGGER_RATE_LIMIT)
async def trigger_sync(
    request: Request,
    body: TriggerRequest,
    scheduler=Depends(get_scheduler),
):
    """
    Start a sync in the background and return immediately.

    Poll ``/api/sync/status`` or ``/api/sync/runs`` for the outcome.
    """
    try:
        return await scheduler.trigger(body.sync_type.value, account_id=body.account_id)
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=e.reason)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/events", response_model=EventsResponse)
@limiter.limit("60/minute")
async def get_sync_events(
    request: Request,
    event_type: Optional[str] = Query(None, description="Filter by event type, e.g. run.failed"),
    account_id: Optional[str] = Query(None, description="Only events of this account"),
    limit: int = Query(50, ge=1, le=100),
):
    """Recent sync lifecycle events."""
    selected = None
    if event_type:
        try:
            selected = SyncEvent(event_type)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown event type: {event_type}")
    history = events.get_history(event_type=selected, account_id=account_id, limit=limit)
    return {"events": history, "count": len(history)}
