"""
FHB-style warehouse API adapter (token login, base64 simple-auth header).

Endpoints:
    POST /login                      {app_id, secret} -> {token, expires_at}
    GET  /order/history?from&to&page -> {orders: [...]}
    GET  /order/{id}                 -> {order: {...}}
    POST /order                      -> {id, ...}
"""
import base64
from datetime import date, timedelta
from typing import Any, Dict

from fulfillment.config import config
from fulfillment.exceptions import ProviderAuthError
from fulfillment.models import (
    FhbOrder,
    HistoryPage,
    ProviderKey,
    Token,
    parse_datetime,
    utcnow,
)
from fulfillment.observability import get_logger
from fulfillment.providers.base import ProviderAdapter

logger = get_logger(__name__)

# Tokens are valid 24h unless the API says otherwise
DEFAULT_TOKEN_TTL = timedelta(hours=24)

# History pages hold 15 orders; a shorter page is the last one
HISTORY_PAGE_SIZE = 15


class FhbAdapter(ProviderAdapter):
    """Adapter for FHB-style token APIs."""

    provider = ProviderKey.FHB
    default_base_url = config.providers.fhb_base_url

    async def authenticate(self) -> Token:
        app_id = self.credentials.get("app_id")
        secret = self.credentials.get("secret")
        if not app_id or not secret:
            raise ProviderAuthError(
                "Missing FHB credentials", details="app_id and secret are required",
                provider=self.provider.value,
            )

        data = await self._request(
            "POST", "login", json={"app_id": app_id, "secret": secret}, authenticated=False
        )
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise ProviderAuthError(
                "FHB login returned no token", provider=self.provider.value
            )

        expires_at = parse_datetime(data.get("expires_at")) or utcnow() + DEFAULT_TOKEN_TTL
        return Token(value=token, expires_at=expires_at)

    def _auth_headers(self, token: Token) -> Dict[str, str]:
        encoded = base64.b64encode(token.value.encode()).decode()
        return {"X-Authentication-Simple": encoded}

    async def fetch_order_history(self, start: date, end: date, page: int) -> HistoryPage:
        data = await self._request(
            "GET",
            "order/history",
            params={"from": start.isoformat(), "to": end.isoformat(), "page": page},
        )
        if isinstance(data, dict):
            entries = data.get("orders") or data.get("data") or []
        else:
            entries = data
        # No page metadata: a short page ends the listing
        has_more = isinstance(entries, list) and len(entries) >= HISTORY_PAGE_SIZE
        return self._decode_page(entries, has_more=has_more)

    async def fetch_order(self, external_id: str) -> FhbOrder:
        data = await self._request("GET", f"order/{external_id}")
        if isinstance(data, dict) and isinstance(data.get("order"), dict):
            data = data["order"]
        return FhbOrder.from_api(data)

    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(
            "Creating FHB order",
            extra={"account_id": self.account.id, "variable_symbol": payload.get("variable_symbol")},
        )
        return await self._request("POST", "order", json=payload)
