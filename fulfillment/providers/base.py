"""
Common async HTTP adapter for fulfillment provider APIs.

Each provider subclass supplies authentication and endpoint mapping; this
base owns the transport concerns shared by all of them:

- Connection pooling with httpx
- Exponential backoff retry for transport errors (bounded, per request)
- Circuit breaker per account (opens after 5 consecutive failures)
- Token bucket rate limiting per adapter
- Token caching until expiry
- Request correlation IDs for tracing
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from fulfillment.config import config
from fulfillment.exceptions import (
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
    ProviderError,
)
from fulfillment.models import (
    ConnectionCheck,
    HistoryPage,
    InternalStatus,
    ProviderKey,
    ProviderOrder,
    RECORD_TYPES,
    SyncWindow,
    Token,
    WarehouseAccount,
    utcnow,
)
from fulfillment.observability import get_correlation_id, get_logger, metrics, Timer
from fulfillment.resilience import (
    CircuitOpenError,
    RateLimiter,
    RetryConfig,
    breakers,
    retry_with_backoff,
)
from fulfillment.status_mapper import map_record_status

logger = get_logger(__name__)


class ProviderAdapter(ABC):
    """
    Uniform contract implemented once per provider.

    Usage:
        async with create_adapter(account) as adapter:
            page = await adapter.fetch_order_history(start, end, page=1)
    """

    provider: ProviderKey
    default_base_url: str = ""

    def __init__(
        self,
        account: WarehouseAccount,
        base_url: Optional[str] = None,
        timeout: float = None,
        retry_config: Optional[RetryConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.account = account
        self.credentials = account.credentials or {}
        self.base_url = (
            base_url
            or self.credentials.get("api_url")
            or self.default_base_url
        ).rstrip("/")
        self.timeout = timeout or config.providers.request_timeout
        self.retry_config = retry_config or RetryConfig(
            max_attempts=config.providers.retry_attempts,
            base_delay=1.0,
            max_delay=30.0,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            rate=config.providers.requests_per_second,
            burst=max(int(config.providers.requests_per_second * 2), 1),
        )
        self._circuit_breaker = breakers.get(account.id)
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[Token] = None

    # ─── Lifecycle ──────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                ),
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ProviderAdapter":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ─── Contract ───────────────────────────────────────────────────────────

    @abstractmethod
    async def authenticate(self) -> Token:
        """Obtain a fresh access token from the provider."""

    @abstractmethod
    async def fetch_order_history(self, start: date, end: date, page: int) -> HistoryPage:
        """Fetch one page of orders created within ``[start, end]``."""

    @abstractmethod
    async def fetch_order(self, external_id: str) -> ProviderOrder:
        """Fetch a single order by provider id."""

    @abstractmethod
    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Submit an order to the provider."""

    async def get_order_status(self, external_id: str) -> InternalStatus:
        """Current internal status of one provider order."""
        record = await self.fetch_order(external_id)
        return map_record_status(record)

    async def test_connection(self) -> ConnectionCheck:
        """
        Log in afresh and read the first page of today's orders.

        Failures are reported in the result, never raised.
        """
        today = utcnow().date()
        try:
            self._token = None
            await self._ensure_token()
            records = await self.sync_orders(today, today, max_pages=1)
        except ProviderError as e:
            return ConnectionCheck(ok=False, message=str(e))
        return ConnectionCheck(
            ok=True,
            message=f"Connected to {self.provider.display_name}, {len(records)} orders today",
        )

    async def sync_orders(self, start: date, end: date, max_pages: int = None) -> List[ProviderOrder]:
        """
        Walk every page of ``[start, end]`` without window splitting.

        Stops at ``max_pages`` (the page ceiling by default). Use
        ``WindowFetcher`` when the window may exceed the ceiling.
        """
        max_pages = max_pages or config.sync.page_ceiling
        records: List[ProviderOrder] = []
        for page_number in range(1, max_pages + 1):
            page = await self.fetch_order_history(start, end, page_number)
            records.extend(page.records)
            if not page.has_more or not page.records:
                break
        else:
            logger.warning(
                f"sync_orders stopped at {max_pages} pages for {SyncWindow(start, end)}",
                extra={"account_id": self.account.id},
            )
        return records

    # ─── Helpers for subclasses ─────────────────────────────────────────────

    def _auth_headers(self, token: Token) -> Dict[str, str]:
        """Headers that carry the token (Bearer by default)."""
        return {"Authorization": f"Bearer {token.value}"}

    async def _ensure_token(self) -> Token:
        if self._token is None or self._token.is_expired():
            self._token = await self.authenticate()
            logger.debug(
                f"Authenticated with {self.provider.value}",
                extra={"account_id": self.account.id},
            )
        return self._token

    def _decode_page(self, entries: Any, has_more: bool) -> HistoryPage:
        """Decode raw entries into typed records; undecodable entries are counted, not raised."""
        if not isinstance(entries, list):
            raise ProviderDataError(
                "Order history is not a list",
                expected="list",
                got=type(entries).__name__,
            )
        record_type = RECORD_TYPES[self.provider]
        records = []
        skipped = 0
        for entry in entries:
            try:
                records.append(record_type.from_api(entry))
            except ProviderDataError as e:
                skipped += 1
                logger.warning(f"Skipping malformed {self.provider.value} record: {e}")
        return HistoryPage(records=records, has_more=has_more, skipped=skipped)

    def _page_number(self, value: Any, field_name: str) -> int:
        """Pagination counters arrive as ints or numeric strings."""
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ProviderDataError(
                f"{self.provider.display_name} sent a non-numeric {field_name}",
                expected=f"integer {field_name}",
                got=repr(value),
            ) from e

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Any:
        """
        Make HTTP request to the provider with rate limit, retry and circuit breaker.

        Raises:
            ProviderConnectionError: Network/timeout errors (after retries)
            ProviderAuthError: Credentials rejected (401/403)
            ProviderAPIError: API returned error response
            CircuitOpenError: Circuit breaker is open for this account
        """
        if not await self._circuit_breaker.can_execute():
            raise CircuitOpenError(
                "Circuit breaker is open",
                details=f"request to {path} rejected for account {self.account.id}",
            )

        if not await self.rate_limiter.acquire(timeout=self.timeout):
            raise ProviderConnectionError("Rate limiter wait exceeded", details=path)

        headers = {}
        if authenticated:
            token = await self._ensure_token()
            headers.update(self._auth_headers(token))

        try:
            result = await retry_with_backoff(
                self._do_request,
                method, path, params, json, headers,
                config=self.retry_config,
                retryable_exceptions=(ProviderConnectionError,),
            )
            await self._circuit_breaker.record_success()
            return result

        except ProviderAuthError:
            self._token = None
            await self._circuit_breaker.record_failure()
            raise

        except (ProviderAPIError, ProviderConnectionError):
            await self._circuit_breaker.record_failure()
            raise

    async def _do_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        json: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Any:
        """Execute a single HTTP request (called by retry wrapper)."""
        if not self._client:
            await self.connect()

        request_headers = dict(headers)
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        endpoint = f"{self.provider.value}:{path.split('?')[0]}"
        metrics.record_request(endpoint)

        try:
            with Timer(f"{self.provider.value}_{method.lower()}", logger) as timer:
                response = await self._client.request(
                    method=method,
                    url=self._url(path),
                    params=params,
                    json=json,
                    headers=request_headers or None,
                )
            metrics.record_timing(endpoint, timer.elapsed_ms)

            if response.status_code in (401, 403):
                raise ProviderAuthError(
                    f"{self.provider.display_name} rejected credentials",
                    details=f"HTTP {response.status_code}",
                    provider=self.provider.value,
                )

            if response.status_code >= 400:
                error_text = response.text[:500]
                logger.error(
                    f"API error {response.status_code}: {error_text}",
                    extra={"endpoint": endpoint, "status_code": response.status_code}
                )
                raise ProviderAPIError(
                    f"{self.provider.display_name} returned {response.status_code}",
                    status_code=response.status_code,
                    details=error_text
                )

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise ProviderDataError(
                    "Response is not JSON", details=str(e), expected="json"
                ) from e

        except httpx.TimeoutException as e:
            logger.error(
                f"Request timeout: {method} {endpoint}",
                extra={"endpoint": endpoint, "timeout": self.timeout}
            )
            raise ProviderConnectionError(
                f"Request timeout after {self.timeout}s",
                details=endpoint,
                retry_after=5
            ) from e

        except httpx.RequestError as e:
            logger.error(
                f"Request failed: {method} {endpoint} - {e}",
                extra={"endpoint": endpoint, "error": str(e)}
            )
            raise ProviderConnectionError(str(e) or type(e).__name__, details=endpoint) from e
