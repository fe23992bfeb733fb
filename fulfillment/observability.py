"""
Logging, correlation IDs and in-process metrics for the sync engine.

Every log line written while an account is being synced carries the
account, the tier and (once created) the run id, so one run can be
followed across the fetcher, the store and the reconciler:

    with run_context(account.id, "fast"):
        run = await store.start_sync_run(account.id, SyncTier.FAST)
        bind_run_id(run.id)
        logger.info("Window fetched")   # account_id, sync_type, run_id attached

Outside a run (HTTP requests, scheduler ticks) ``correlation_context``
alone scopes the correlation id.
"""
import asyncio
import contextlib
import functools
import json
import logging
import time
import uuid
from collections import deque
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterator, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# account_id / sync_type / run_id of the sync run being executed
_run_fields: ContextVar[Dict[str, Any]] = ContextVar("run_fields", default={})

# LogRecord attributes that are not user-supplied extras
_STANDARD_ATTRS = frozenset(logging.LogRecord(
    "", logging.INFO, __file__, 0, "", (), None
).__dict__) | {"message", "asctime"}

# Libraries that are too chatty at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "uvicorn.access")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


class correlation_context:
    """Scope a correlation id (generated when not given) to a block."""

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.token = None

    def __enter__(self) -> str:
        self.token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, *args):
        _correlation_id.reset(self.token)


@contextlib.contextmanager
def run_context(account_id: str, sync_type: str) -> Iterator[str]:
    """Correlation id plus account and tier fields for one account sync run."""
    token = _run_fields.set({"account_id": account_id, "sync_type": sync_type})
    try:
        with correlation_context() as correlation_id:
            yield correlation_id
    finally:
        _run_fields.reset(token)


def bind_run_id(run_id: str) -> None:
    """Attach the persisted run id to the current run context."""
    fields = _run_fields.get()
    if fields:
        _run_fields.set({**fields, "run_id": run_id})


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Run fields overlaid with the record's own ``extra``."""
    fields = dict(_run_fields.get())
    fields.update(
        (k, v) for k, v in record.__dict__.items()
        if k not in _STANDARD_ATTRS and not k.startswith("_")
    )
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        entry.update(_record_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``TIMESTAMP - LEVEL - LOGGER [CORRELATION_ID] - MESSAGE | extras``"""

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        line = f"{timestamp} - {record.levelname:8} - {record.name}"
        if correlation_id:
            line += f" [{correlation_id}]"
        line += f" - {record.getMessage()}"

        fields = _record_fields(record)
        if fields:
            line += f" | {fields}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", json_format: bool = False, include_libs: bool = False) -> None:
    """Install a single stderr handler on the root logger."""
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))

    if not include_libs:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Measure a block in milliseconds.

    With a logger, the duration is logged at DEBUG, or WARNING once it
    passes ``slow_ms``.
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, slow_ms: float = 5000):
        self.name = name
        self.logger = logger
        self.slow_ms = slow_ms
        self.elapsed_ms: float = 0
        self._started: float = 0

    def __enter__(self) -> "Timer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        if self.logger:
            self.logger.log(
                logging.WARNING if self.elapsed_ms > self.slow_ms else logging.DEBUG,
                f"{self.name} took {self.elapsed_ms:.0f}ms",
                extra={"duration_ms": round(self.elapsed_ms, 2)},
            )


def timed(name: Optional[str] = None, warn_threshold_ms: float = 1000):
    """Time every call of a coroutine function into ``metrics``."""
    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"timed() expects a coroutine function, got {func!r}")
        operation = name or func.__name__
        func_logger = get_logger(func.__module__)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            timer = Timer(operation, func_logger, slow_ms=warn_threshold_ms)
            try:
                with timer:
                    return await func(*args, **kwargs)
            finally:
                metrics.record_timing(operation, timer.elapsed_ms)

        return wrapper

    return decorator


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS
# ═══════════════════════════════════════════════════════════════════════════════

def _summarize(samples: Deque[float]) -> Dict[str, Any]:
    ordered = sorted(samples)
    count = len(ordered)
    return {
        "count": count,
        "avg_ms": round(sum(ordered) / count, 2),
        "min_ms": round(ordered[0], 2),
        "max_ms": round(ordered[-1], 2),
        "p50_ms": round(ordered[count // 2], 2),
        "p95_ms": round(ordered[int(count * 0.95)], 2) if count >= 20 else None,
    }


class MetricsCollector:
    """
    Process-local counters for the admin API.

    ``runs`` counts account runs by ``tier.status``; ``orders`` sums the
    staging outcomes per tier; ``requests`` and ``errors`` count by key;
    ``timing`` keeps the newest 100 samples per operation.
    """

    max_samples = 100

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._runs: Dict[str, int] = {}
        self._orders: Dict[str, Dict[str, int]] = {}
        self._requests: Dict[str, int] = {}
        self._errors: Dict[str, int] = {}
        self._timings: Dict[str, Deque[float]] = {}

    @staticmethod
    def _bump(counter: Dict[str, int], key: str, by: int = 1) -> None:
        counter[key] = counter.get(key, 0) + by

    def record_run(self, sync_type: str, status: str, duration_ms: float) -> None:
        self._bump(self._runs, f"{sync_type}.{status}")
        self.record_timing(f"sync_run.{sync_type}", duration_ms)

    def record_orders(self, sync_type: str, created: int, updated: int, skipped: int) -> None:
        """Staging outcomes of one run."""
        totals = self._orders.setdefault(sync_type, {"created": 0, "updated": 0, "skipped": 0})
        totals["created"] += created
        totals["updated"] += updated
        totals["skipped"] += skipped

    def record_request(self, endpoint: str) -> None:
        self._bump(self._requests, endpoint)

    def record_error(self, error_type: str) -> None:
        self._bump(self._errors, error_type)

    def record_timing(self, operation: str, duration_ms: float) -> None:
        samples = self._timings.get(operation)
        if samples is None:
            samples = self._timings[operation] = deque(maxlen=self.max_samples)
        samples.append(duration_ms)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "runs": dict(self._runs),
            "orders": {tier: dict(totals) for tier, totals in self._orders.items()},
            "requests": dict(self._requests),
            "errors": dict(self._errors),
            "timing": {op: _summarize(s) for op, s in self._timings.items() if s},
        }


metrics = MetricsCollector()
