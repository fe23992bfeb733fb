"""
CartPanda-style REST API adapter (static bearer token per store).

Endpoints:
    GET {store_slug}/orders?created_at_min&created_at_max&page
    GET {store_slug}/orders/{id}
"""
from datetime import date, datetime, timezone
from typing import Any, Dict

from fulfillment.config import config
from fulfillment.exceptions import ProviderAPIError, ProviderAuthError
from fulfillment.models import (
    CartPandaOrder,
    HistoryPage,
    ProviderKey,
    Token,
)
from fulfillment.observability import get_logger
from fulfillment.providers.base import ProviderAdapter

logger = get_logger(__name__)

# Personal access tokens do not expire
NEVER_EXPIRES = datetime(9999, 12, 31, tzinfo=timezone.utc)


class CartPandaAdapter(ProviderAdapter):
    """Adapter for CartPanda-style store APIs."""

    provider = ProviderKey.CARTPANDA
    default_base_url = config.providers.cartpanda_base_url

    @property
    def store_slug(self) -> str:
        return self.credentials.get("store_slug", "")

    async def authenticate(self) -> Token:
        api_token = self.credentials.get("api_token")
        if not api_token or not self.store_slug:
            raise ProviderAuthError(
                "Missing CartPanda credentials",
                details="store_slug and api_token are required",
                provider=self.provider.value,
            )
        return Token(value=api_token, expires_at=NEVER_EXPIRES)

    async def fetch_order_history(self, start: date, end: date, page: int) -> HistoryPage:
        data = await self._request(
            "GET",
            f"{self.store_slug}/orders",
            params={
                "created_at_min": f"{start.isoformat()}T00:00:00Z",
                "created_at_max": f"{end.isoformat()}T23:59:59Z",
                "page": page,
            },
        )
        if not isinstance(data, dict):
            return self._decode_page(data, has_more=bool(data))

        # Responses come as orders.data (paginator), data, or a bare orders list
        block = data.get("orders")
        meta: Dict[str, Any] = data
        if isinstance(block, dict):
            entries = block.get("data") or []
            meta = block
        elif isinstance(block, list):
            entries = block
        else:
            entries = data.get("data") or []

        last_page = meta.get("last_page")
        current_page = meta.get("current_page", page)
        if last_page is not None:
            has_more = (
                self._page_number(current_page, "current_page")
                < self._page_number(last_page, "last_page")
            )
        else:
            has_more = bool(entries)
        return self._decode_page(entries, has_more=has_more)

    async def fetch_order(self, external_id: str) -> CartPandaOrder:
        data = await self._request("GET", f"{self.store_slug}/orders/{external_id}")
        if isinstance(data, dict) and isinstance(data.get("order"), dict):
            data = data["order"]
        return CartPandaOrder.from_api(data)

    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise ProviderAPIError(
            "CartPanda does not accept orders through the API",
            details="orders originate in the storefront",
            status_code=405,
        )
