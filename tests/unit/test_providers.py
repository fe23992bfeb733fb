"""
Tests for fulfillment.providers adapters.

HTTP is mocked at the adapter's httpx client.
"""
import json
import pytest
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import httpx

from fulfillment.exceptions import (
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
    UnknownProviderError,
    ValidationError,
)
from fulfillment.models import InternalStatus, ProviderKey, SyncWindow, WarehouseAccount, utcnow
from fulfillment.providers import (
    CartPandaAdapter,
    EuropeanFulfillmentAdapter,
    FhbAdapter,
    available_providers,
    create_adapter,
    validate_credentials,
)
from fulfillment.providers.european import api_country
from fulfillment.resilience import CircuitOpenError, RetryConfig, breakers
from fulfillment.window_fetcher import WindowFetcher

FAST_RETRY = RetryConfig(max_attempts=2, base_delay=0.01, max_delay=0.01)


def mock_response(status_code: int = 200, data=None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if data is not None:
        body = json.dumps(data).encode()
        response.content = body
        response.json.return_value = data
        response.text = body.decode()
    else:
        response.content = text.encode()
        response.text = text
    return response


def with_client(adapter, *responses):
    client = MagicMock()
    client.request = AsyncMock(side_effect=list(responses))
    adapter._client = client
    return client


def account(provider: ProviderKey, credentials: dict, account_id: str = None) -> WarehouseAccount:
    return WarehouseAccount(
        id=account_id or f"acc-{provider.value}",
        provider=provider,
        display_name=provider.display_name,
        credentials=credentials,
    )


class TestFactory:
    """Tests for create_adapter and credential validation."""

    def test_creates_by_provider(self):
        """Each provider key builds its adapter."""
        assert isinstance(
            create_adapter(account(ProviderKey.FHB, {"app_id": "a", "secret": "s"})), FhbAdapter
        )
        assert isinstance(
            create_adapter(account(ProviderKey.CARTPANDA, {"store_slug": "shop", "api_token": "t"})),
            CartPandaAdapter,
        )

    def test_missing_credential(self):
        """Blank required fields are rejected before any request."""
        with pytest.raises(ValidationError) as exc_info:
            validate_credentials("european_fulfillment", {"email": "a@b.c", "password": " ", "country": "ES"})
        assert exc_info.value.field == "credentials.password"

    def test_unknown_provider(self):
        """Unsupported keys raise UnknownProviderError."""
        with pytest.raises(UnknownProviderError):
            validate_credentials("pigeon_post", {})

    def test_available_providers(self):
        """Every adapter is listed with its credential fields."""
        keys = {p["key"]: p["required_credentials"] for p in available_providers()}
        assert keys["fhb"] == ["app_id", "secret"]
        assert set(keys) == {"fhb", "european_fulfillment", "cartpanda"}


class TestFhbAdapter:
    """Tests for FhbAdapter."""

    def make(self, **kwargs):
        return FhbAdapter(
            account(ProviderKey.FHB, {"app_id": "app", "secret": "s3cret"}, **kwargs),
            retry_config=FAST_RETRY,
        )

    @pytest.mark.asyncio
    async def test_login_then_history(self, sample_fhb_entry):
        """Logs in once, sends the simple-auth header and decodes orders."""
        adapter = self.make()
        client = with_client(
            adapter,
            mock_response(200, {"token": "tok", "expires_at": "2099-01-01T00:00:00Z"}),
            mock_response(200, {"orders": [sample_fhb_entry]}),
        )

        page = await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 31), 1)

        assert [r.external_id for r in page.records] == ["FHB-1001"]
        assert not page.has_more  # short page
        login_call, history_call = client.request.await_args_list
        assert login_call.kwargs["json"] == {"app_id": "app", "secret": "s3cret"}
        assert history_call.kwargs["params"] == {"from": "2024-03-01", "to": "2024-03-31", "page": 1}
        assert history_call.kwargs["headers"]["X-Authentication-Simple"] == "dG9r"

    @pytest.mark.asyncio
    async def test_full_page_has_more(self, make_fhb_payload):
        """A full 15-entry page means another page may follow."""
        adapter = self.make()
        entries = [make_fhb_payload(f"F{i}") for i in range(15)]
        with_client(
            adapter,
            mock_response(200, {"token": "tok"}),
            mock_response(200, {"orders": entries}),
        )
        page = await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 1), 1)
        assert page.has_more
        assert len(page.records) == 15

    @pytest.mark.asyncio
    async def test_malformed_entries_skipped(self, sample_fhb_entry):
        """Undecodable entries are counted, not raised."""
        adapter = self.make()
        with_client(
            adapter,
            mock_response(200, {"token": "tok"}),
            mock_response(200, {"orders": [sample_fhb_entry, "garbage"]}),
        )
        page = await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 1), 1)
        assert len(page.records) == 1
        assert page.skipped == 1

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        """401 on login raises ProviderAuthError."""
        adapter = self.make()
        with_client(adapter, mock_response(401, text="Unauthorized"))
        with pytest.raises(ProviderAuthError):
            await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 1), 1)

    @pytest.mark.asyncio
    async def test_test_connection_never_raises(self):
        """Connection check reports failure as a value."""
        adapter = self.make()
        with_client(adapter, mock_response(200, {"message": "no token here"}))
        check = await adapter.test_connection()
        assert not check.ok
        assert "no token" in check.message

    @pytest.mark.asyncio
    async def test_test_connection_reads_today(self, sample_fhb_entry):
        """A fresh login plus one page of today's history."""
        adapter = self.make()
        client = with_client(
            adapter,
            mock_response(200, {"token": "tok"}),
            mock_response(200, {"orders": [sample_fhb_entry]}),
        )

        check = await adapter.test_connection()

        assert check.ok
        assert "1 orders today" in check.message
        history_call = client.request.await_args_list[1]
        today = utcnow().date().isoformat()
        assert history_call.kwargs["params"] == {"from": today, "to": today, "page": 1}

    @pytest.mark.asyncio
    async def test_sync_orders_walks_pages(self, make_fhb_payload):
        """Pages are read until a short one ends the listing."""
        adapter = self.make()
        full = [make_fhb_payload(f"F{i}") for i in range(15)]
        client = with_client(
            adapter,
            mock_response(200, {"token": "tok"}),
            mock_response(200, {"orders": full}),
            mock_response(200, {"orders": [make_fhb_payload("F15")]}),
        )

        records = await adapter.sync_orders(date(2024, 3, 1), date(2024, 3, 2))

        assert len(records) == 16
        assert client.request.await_count == 3

    @pytest.mark.asyncio
    async def test_server_error(self):
        """5xx responses raise ProviderAPIError with the status code."""
        adapter = self.make()
        with_client(adapter, mock_response(200, {"token": "tok"}), mock_response(503, text="down"))
        with pytest.raises(ProviderAPIError) as exc_info:
            await adapter.fetch_order("F1")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_transport_error_retried(self, sample_fhb_entry):
        """Network errors are retried before succeeding."""
        adapter = self.make()
        client = with_client(
            adapter,
            mock_response(200, {"token": "tok"}),
            httpx.ConnectError("connection refused"),
            mock_response(200, {"order": sample_fhb_entry}),
        )
        record = await adapter.fetch_order("FHB-1001")
        assert record.external_id == "FHB-1001"
        assert client.request.await_count == 3

    @pytest.mark.asyncio
    async def test_transport_error_exhausts_retries(self):
        """Persistent network errors surface as ProviderConnectionError."""
        adapter = self.make()
        with_client(
            adapter,
            mock_response(200, {"token": "tok"}),
            httpx.ConnectError("refused"),
            httpx.ConnectError("refused"),
        )
        with pytest.raises(ProviderConnectionError):
            await adapter.fetch_order("F1")

    @pytest.mark.asyncio
    async def test_open_circuit_rejects(self):
        """An open breaker rejects without touching the network."""
        adapter = self.make(account_id="acc-circuit")
        breaker = breakers.get("acc-circuit")
        for _ in range(breaker.config.failure_threshold):
            await breaker.record_failure()
        client = with_client(adapter)

        with pytest.raises(CircuitOpenError):
            await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 1), 1)
        client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_order_status(self, sample_fhb_entry):
        """Status lookups map through the status table."""
        adapter = self.make()
        sample_fhb_entry["status"] = "returned"
        with_client(adapter, mock_response(200, {"token": "tok"}), mock_response(200, {"order": sample_fhb_entry}))
        assert await adapter.get_order_status("FHB-1001") == InternalStatus.RETURNED


class TestEuropeanAdapter:
    """Tests for EuropeanFulfillmentAdapter."""

    def make(self):
        return EuropeanFulfillmentAdapter(
            account(ProviderKey.EUROPEAN, {"email": "ops@example.com", "password": "pw", "country": "ES"}),
            retry_config=FAST_RETRY,
        )

    def test_api_country(self):
        """Country codes translate to API names."""
        assert api_country("es") == "spain"
        assert api_country("Narnia") == "narnia"
        assert api_country("") == ""

    @pytest.mark.asyncio
    async def test_history_uses_last_page(self, sample_european_lead):
        """Pagination follows last_page and sends the country filter."""
        adapter = self.make()
        client = with_client(
            adapter,
            mock_response(200, {"token": "bearer-tok"}),
            mock_response(200, {"leads": [sample_european_lead], "last_page": 3}),
        )

        page = await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 31), 2)

        assert page.has_more
        assert page.records[0].external_id == "L-5001"
        history_call = client.request.await_args_list[1]
        assert history_call.kwargs["params"]["country"] == "spain"
        assert history_call.kwargs["headers"]["Authorization"] == "Bearer bearer-tok"

    @pytest.mark.asyncio
    async def test_last_page_reached(self, sample_european_lead):
        """The last page reports no more."""
        adapter = self.make()
        with_client(
            adapter,
            mock_response(200, {"token": "t"}),
            mock_response(200, {"leads": [sample_european_lead], "last_page": 2}),
        )
        page = await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 31), 2)
        assert not page.has_more


class TestCartPandaAdapter:
    """Tests for CartPandaAdapter."""

    def make(self):
        return CartPandaAdapter(
            account(ProviderKey.CARTPANDA, {"store_slug": "myshop", "api_token": "pat"}),
            retry_config=FAST_RETRY,
        )

    @pytest.mark.asyncio
    async def test_paginated_orders(self, sample_cartpanda_order):
        """Reads the nested paginator and uses the static token."""
        adapter = self.make()
        client = with_client(
            adapter,
            mock_response(200, {"orders": {"data": [sample_cartpanda_order], "current_page": 1, "last_page": 1}}),
        )

        page = await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 31), 1)

        assert not page.has_more
        assert page.records[0].external_id == "778899"
        call = client.request.await_args
        assert call.kwargs["url"].endswith("/myshop/orders")
        assert call.kwargs["params"]["created_at_max"] == "2024-03-31T23:59:59Z"
        assert call.kwargs["headers"]["Authorization"] == "Bearer pat"

    @pytest.mark.asyncio
    async def test_create_order_unsupported(self):
        """Orders cannot be pushed to the storefront."""
        with pytest.raises(ProviderAPIError) as exc_info:
            await self.make().create_order({})
        assert exc_info.value.status_code == 405

    @pytest.mark.asyncio
    async def test_test_connection_rejected_token(self):
        """The static token is only proven by a real request."""
        adapter = self.make()
        with_client(adapter, mock_response(401, text="Unauthenticated"))

        check = await adapter.test_connection()

        assert not check.ok
        assert "rejected credentials" in check.message


class TestPageCounters:
    """Tests for pagination counters sent by the provider."""

    def european(self):
        return EuropeanFulfillmentAdapter(
            account(ProviderKey.EUROPEAN, {"email": "ops@example.com", "password": "pw"}),
            retry_config=FAST_RETRY,
        )

    @pytest.mark.asyncio
    async def test_non_numeric_last_page(self, sample_european_lead):
        """A garbled last_page is a data error, not a crash."""
        adapter = self.european()
        with_client(
            adapter,
            mock_response(200, {"token": "t"}),
            mock_response(200, {"leads": [sample_european_lead], "last_page": "n/a"}),
        )

        with pytest.raises(ProviderDataError) as exc_info:
            await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 31), 1)
        assert exc_info.value.expected == "integer last_page"
        assert exc_info.value.got == "'n/a'"

    @pytest.mark.asyncio
    async def test_window_incomplete_on_bad_counter(self, sample_european_lead):
        """The window fetcher reports the bad page as an incomplete window."""
        adapter = self.european()
        with_client(
            adapter,
            mock_response(200, {"token": "t"}),
            mock_response(200, {"leads": [sample_european_lead], "last_page": None}),
            mock_response(200, {"leads": [sample_european_lead], "last_page": "two"}),
        )

        result = await WindowFetcher(adapter).fetch(SyncWindow(date(2024, 3, 1), date(2024, 3, 31)))

        assert not result.complete
        assert "last_page" in result.error

    @pytest.mark.asyncio
    async def test_numeric_strings_accepted(self, sample_cartpanda_order):
        """String counters are read as numbers."""
        adapter = CartPandaAdapter(
            account(ProviderKey.CARTPANDA, {"store_slug": "myshop", "api_token": "pat"}),
            retry_config=FAST_RETRY,
        )
        with_client(
            adapter,
            mock_response(200, {"orders": {"data": [sample_cartpanda_order], "current_page": "1", "last_page": "3"}}),
        )

        page = await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 31), 1)

        assert page.has_more

    @pytest.mark.asyncio
    async def test_missing_current_page_defaults_to_request(self, sample_cartpanda_order):
        """Without current_page the requested page is compared to last_page."""
        adapter = CartPandaAdapter(
            account(ProviderKey.CARTPANDA, {"store_slug": "myshop", "api_token": "pat"}),
            retry_config=FAST_RETRY,
        )
        with_client(adapter, mock_response(200, {"data": [sample_cartpanda_order], "last_page": 2}))

        page = await adapter.fetch_order_history(date(2024, 3, 1), date(2024, 3, 31), 2)

        assert not page.has_more
