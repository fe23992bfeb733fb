"""
Sync lifecycle events.

Runs, the window fetcher and the reconciler publish what happened; alerting
hooks and the admin API consume it. Handlers run concurrently and a failing
handler is logged, never propagated into the sync run that emitted.

Usage:
    from fulfillment.events import events, SyncEvent

    @events.on(SyncEvent.WINDOW_OVERFLOW)
    async def alert_hot_day(data: dict):
        notify(f"{data['account_id']} hit the page ceiling on {data['day']}")

    events.get_history(SyncEvent.RUN_FAILED, account_id="acc-1")
"""
import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional

from fulfillment.observability import get_logger, get_correlation_id

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class SyncEvent(Enum):
    RUN_STARTED = "run.started"
    RUN_COMPLETED = "run.completed"
    RUN_FAILED = "run.failed"

    # A single day still exceeded the page ceiling
    WINDOW_OVERFLOW = "window.overflow"

    ORDERS_RECONCILED = "orders.reconciled"

    # One tier invocation across its accounts
    TIER_STARTED = "tier.started"
    TIER_COMPLETED = "tier.completed"


@dataclass
class EventMetadata:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "sync_orchestrator"


@dataclass
class Event:
    type: SyncEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    @property
    def account_id(self) -> Optional[str]:
        return self.data.get("account_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "event_id": self.metadata.event_id,
                "timestamp": self.metadata.timestamp.isoformat(),
                "correlation_id": self.metadata.correlation_id,
                "source": self.metadata.source,
            },
        }


class EventBus:
    """
    In-process publish/subscribe for sync events.

    Handlers subscribe to one event type or, with ``None``, to all of them.
    The newest ``max_history`` events are kept for the admin API.
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[Optional[SyncEvent], List[EventHandler]] = {}
        self._history: Deque[Event] = deque(maxlen=max_history)

    def on(self, event_type: Optional[SyncEvent] = None) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of ``subscribe``."""
        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            f"Registered {handler.__name__} for {event_type.value if event_type else 'all events'}"
        )

    async def emit(
        self,
        event_type: SyncEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "sync_orchestrator",
    ) -> Event:
        """Record the event and await every matching handler."""
        event = Event(type=event_type, data=data or {}, metadata=EventMetadata(source=source))
        self._history.append(event)

        handlers = self._handlers.get(event_type, []) + self._handlers.get(None, [])
        if not handlers:
            return event

        results = await asyncio.gather(
            *(handler(event.data) for handler in handlers),
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {handler.__name__} failed for {event_type.value}: {result}",
                    extra={"event": event.to_dict()},
                )
        return event

    def get_history(
        self,
        event_type: Optional[SyncEvent] = None,
        account_id: Optional[str] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        """Recent events, oldest first, optionally for one type and/or account."""
        selected = [
            e for e in self._history
            if (event_type is None or e.type == event_type)
            and (account_id is None or e.account_id == account_id)
        ]
        return [e.to_dict() for e in selected[-limit:]]

    def clear_handlers(self) -> None:
        self._handlers.clear()

    def clear_history(self) -> None:
        self._history.clear()


events = EventBus()


# ═══════════════════════════════════════════════════════════════════════════════
# EMIT HELPERS
# ═══════════════════════════════════════════════════════════════════════════════


async def emit_run_started(account_id: str, sync_type: str, run_id: str, **kwargs) -> Event:
    return await events.emit(
        SyncEvent.RUN_STARTED,
        {"account_id": account_id, "sync_type": sync_type, "run_id": run_id, **kwargs},
    )


async def emit_run_completed(
    account_id: str, sync_type: str, run_id: str, duration_ms: float, processed: int, **kwargs
) -> Event:
    return await events.emit(
        SyncEvent.RUN_COMPLETED,
        {
            "account_id": account_id,
            "sync_type": sync_type,
            "run_id": run_id,
            "duration_ms": duration_ms,
            "processed": processed,
            **kwargs,
        },
    )


async def emit_run_failed(account_id: str, sync_type: str, run_id: str, error: str, **kwargs) -> Event:
    return await events.emit(
        SyncEvent.RUN_FAILED,
        {"account_id": account_id, "sync_type": sync_type, "run_id": run_id, "error": error, **kwargs},
    )


async def emit_window_overflow(account_id: str, day: str, records: int) -> Event:
    """A single day kept only what the page ceiling allowed."""
    return await events.emit(
        SyncEvent.WINDOW_OVERFLOW,
        {"account_id": account_id, "day": day, "records": records},
        source="window_fetcher",
    )


async def emit_orders_reconciled(account_id: str, matched: int, unmatched: int, **kwargs) -> Event:
    return await events.emit(
        SyncEvent.ORDERS_RECONCILED,
        {"account_id": account_id, "matched": matched, "unmatched": unmatched, **kwargs},
        source="reconciler",
    )
