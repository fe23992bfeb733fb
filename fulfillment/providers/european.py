"""
European-style lead API adapter.

Endpoints (relative to the account's API URL):
    POST api/login?email&password                   -> {token}
    GET  api/leads?country&date_from&date_to&page   -> {leads: [...], last_page}
    GET  api/leads/details?leadNumber=              -> {lead: {...}}
    POST api/leads/store                            -> {lead_number, ...}

Tokens are documented to last 8 hours; they are refreshed after 7.
"""
from datetime import date, timedelta
from typing import Any, Dict

from fulfillment.config import config
from fulfillment.exceptions import ProviderAuthError
from fulfillment.models import EuropeanLead, HistoryPage, ProviderKey, Token, utcnow
from fulfillment.observability import get_logger
from fulfillment.providers.base import ProviderAdapter

logger = get_logger(__name__)

TOKEN_TTL = timedelta(hours=7)

# Operation country codes -> API country names
COUNTRY_NAMES = {
    "ES": "spain",
    "IT": "italy",
    "PT": "portugal",
    "FR": "france",
    "DE": "germany",
}


def api_country(country: str) -> str:
    """Translate a country code or name to the API's lowercase name."""
    if not country:
        return ""
    return COUNTRY_NAMES.get(country.upper(), country.lower())


class EuropeanFulfillmentAdapter(ProviderAdapter):
    """Adapter for European-style lead APIs."""

    provider = ProviderKey.EUROPEAN
    default_base_url = config.providers.european_base_url

    async def authenticate(self) -> Token:
        email = self.credentials.get("email")
        password = self.credentials.get("password")
        if not email or not password:
            raise ProviderAuthError(
                "Missing European Fulfillment credentials",
                details="email and password are required",
                provider=self.provider.value,
            )

        data = await self._request(
            "POST",
            "api/login",
            params={"email": email, "password": password},
            authenticated=False,
        )
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise ProviderAuthError(
                "European Fulfillment login returned no token", provider=self.provider.value
            )
        return Token(value=token, expires_at=utcnow() + TOKEN_TTL)

    async def fetch_order_history(self, start: date, end: date, page: int) -> HistoryPage:
        params = {
            "date_from": start.isoformat(),
            "date_to": end.isoformat(),
            "page": page,
        }
        country = api_country(self.credentials.get("country", ""))
        if country:
            params["country"] = country

        data = await self._request("GET", "api/leads", params=params)
        if not isinstance(data, dict):
            return self._decode_page(data, has_more=bool(data))

        entries = data.get("leads") or data.get("data") or []
        last_page = data.get("last_page")
        if last_page is not None:
            has_more = page < self._page_number(last_page, "last_page")
        else:
            has_more = bool(entries)
        return self._decode_page(entries, has_more=has_more)

    async def fetch_order(self, external_id: str) -> EuropeanLead:
        data = await self._request("GET", "api/leads/details", params={"leadNumber": external_id})
        if isinstance(data, dict):
            data = data.get("lead") or data.get("data") or data
        return EuropeanLead.from_api(data)

    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(payload)
        body.setdefault("country", api_country(self.credentials.get("country", "")))
        logger.info(
            "Creating European Fulfillment lead",
            extra={"account_id": self.account.id, "country": body.get("country")},
        )
        return await self._request("POST", "api/leads/store", json=body)
