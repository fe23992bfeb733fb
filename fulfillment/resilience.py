"""
Protection for provider API calls.

Three layers wrap every HTTP request an adapter makes:

- ``retry_with_backoff``: retries transport failures inside one request,
  honouring the provider's ``retry_after`` hint when it sends one
- ``CircuitBreaker``: one per warehouse account, held in the ``breakers``
  registry so every adapter built for an account shares its state
- ``RateLimiter``: token bucket per adapter instance

Usage:
    breaker = breakers.get(account.id)
    if not await breaker.can_execute():
        raise CircuitOpenError(...)
    result = await retry_with_backoff(do_request, path, config=retry_config)
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from fulfillment.exceptions import ProviderConnectionError
from fulfillment.observability import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class RetryConfig:
    """Backoff schedule for transport errors within a single request."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def delay_for(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""
        hinted = getattr(error, "retry_after", None)
        if hinted:
            return min(float(hinted), self.max_delay)
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        return delay * (1 + self.jitter * random.random())


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    half_open_requests: int = 1


class CircuitOpenError(ProviderConnectionError):
    """Raised instead of calling a provider whose account breaker is open."""

    def __init__(self, message: str = "Circuit breaker is open", details: str = None):
        super().__init__(message, details)


@dataclass
class CircuitBreaker:
    """
    Consecutive-failure breaker for one warehouse account.

    CLOSED lets every request through. ``failure_threshold`` failures in a
    row open it; while OPEN requests are rejected until ``recovery_timeout``
    has passed. The first request after that flips it to HALF_OPEN and is
    one of at most ``half_open_requests`` trial calls: a success closes the
    breaker, a failure opens it again.
    """
    account_id: str = "provider"
    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    rejected: int = 0
    trial_calls: int = 0
    opened_at: Optional[float] = None
    last_failure_at: Optional[datetime] = None

    def __post_init__(self):
        self._lock = asyncio.Lock()

    def retry_in(self) -> float:
        """Seconds until an open breaker admits a trial call."""
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        remaining = self.config.recovery_timeout - (time.monotonic() - self.opened_at)
        return max(remaining, 0.0)

    async def can_execute(self) -> bool:
        async with self._lock:
            if self.state == CircuitState.OPEN and self.retry_in() == 0:
                logger.info(
                    f"Circuit for account {self.account_id} half-open, sending a trial request",
                    extra={"account_id": self.account_id},
                )
                self.state = CircuitState.HALF_OPEN
                self.trial_calls = 0

            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.HALF_OPEN and self.trial_calls < self.config.half_open_requests:
                self.trial_calls += 1
                return True

            self.rejected += 1
            return False

    async def record_success(self) -> None:
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.info(
                    f"Circuit for account {self.account_id} closed after a successful trial",
                    extra={"account_id": self.account_id},
                )
            self.state = CircuitState.CLOSED
            self.failures = 0
            self.trial_calls = 0
            self.opened_at = None

    async def record_failure(self) -> None:
        async with self._lock:
            self.failures += 1
            self.last_failure_at = datetime.now(timezone.utc)
            if self.state == CircuitState.HALF_OPEN or self.failures >= self.config.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.warning(
                        f"Circuit for account {self.account_id} opened after "
                        f"{self.failures} consecutive failures",
                        extra={"account_id": self.account_id},
                    )
                self.state = CircuitState.OPEN
                self.opened_at = time.monotonic()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "rejected": self.rejected,
            "retry_in_seconds": round(self.retry_in(), 1),
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
        }


class BreakerRegistry:
    """Per-account breakers shared by every adapter built for the account."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, account_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(account_id)
        if breaker is None:
            breaker = self._breakers[account_id] = CircuitBreaker(account_id=account_id, config=self.config)
        return breaker

    def state_of(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot for an account, or None if it never made a request."""
        breaker = self._breakers.get(account_id)
        return breaker.snapshot() if breaker else None

    def open_accounts(self) -> List[str]:
        return sorted(a for a, b in self._breakers.items() if b.state != CircuitState.CLOSED)

    def reset(self) -> None:
        self._breakers.clear()


breakers = BreakerRegistry()


@dataclass
class RateLimiter:
    """Token bucket: ``rate`` requests per second with bursts up to ``burst``."""
    rate: float = 5.0
    burst: int = 10
    tokens: float = field(default=0, init=False)
    updated_at: float = field(default=0, init=False)

    def __post_init__(self):
        self.tokens = float(self.burst)
        self.updated_at = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(float(self.burst), self.tokens + (now - self.updated_at) * self.rate)
        self.updated_at = now

    async def acquire(self, timeout: float = 10.0) -> bool:
        """Take one token, waiting up to ``timeout`` seconds for a refill."""
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self.tokens >= 1:
                    self.tokens -= 1
                    return True
                wait = (1 - self.tokens) / self.rate
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(wait, remaining, 0.1))


async def retry_with_backoff(
    func: Callable[..., Any],
    *args,
    config: Optional[RetryConfig] = None,
    retryable_exceptions: Tuple[Type[Exception], ...] = (ProviderConnectionError,),
    **kwargs
) -> Any:
    """
    Await ``func(*args, **kwargs)``, retrying the retryable exceptions.

    Anything else propagates on the first occurrence. The last retryable
    error propagates once ``config.max_attempts`` is used up.
    """
    config = config or RetryConfig()
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            if attempt >= config.max_attempts:
                logger.error(
                    f"Giving up after {attempt} attempts: {e}",
                    extra={"attempts": attempt},
                )
                raise
            delay = config.delay_for(attempt, e)
            logger.warning(
                f"Attempt {attempt} failed ({e}), retrying in {delay:.2f}s",
                extra={"attempt": attempt, "delay": round(delay, 2)},
            )
            await asyncio.sleep(delay)
            attempt += 1
