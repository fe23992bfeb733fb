"""
Pytest configuration and shared fixtures.
"""
import pytest
import pytest_asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from fulfillment.events import events
from fulfillment.models import (
    AccountOperation,
    FhbOrder,
    HistoryPage,
    ProviderKey,
    Token,
    WarehouseAccount,
)
from fulfillment.observability import metrics
from fulfillment.providers.base import ProviderAdapter
from fulfillment.resilience import breakers
from fulfillment.store import DuckDBStore


def fhb_payload(
    order_id: str,
    variable_symbol: Optional[str] = None,
    status: str = "sent",
    phone: Optional[str] = None,
    email: Optional[str] = None,
    name: Optional[str] = None,
    city: Optional[str] = None,
    tracking: Optional[str] = None,
    created_at: str = "2024-03-15T10:00:00Z",
) -> Dict[str, Any]:
    """Order history entry as returned by an FHB-style API."""
    return {
        "id": order_id,
        "variable_symbol": variable_symbol,
        "status": status,
        "tracking": tracking,
        "value": 49.9,
        "created_at": created_at,
        "recipient": {
            "address": {"name": name, "city": city, "street": "Main 1", "zip": "28001", "country": "ES"},
            "contact": {"phone": phone, "email": email},
        },
        "items": [{"sku": "SKU-1", "quantity": 1}],
    }


@pytest.fixture
def sample_fhb_entry() -> Dict[str, Any]:
    """One FHB order history entry."""
    return fhb_payload(
        "FHB-1001",
        variable_symbol="ES-1001",
        status="sent",
        phone="+34 612-345-678",
        email="Ana.Garcia@Example.com",
        name="Ana García",
        city="Madrid",
        tracking="TRK123",
    )


@pytest.fixture
def sample_european_lead() -> Dict[str, Any]:
    """One lead from a European-style leads API."""
    return {
        "n_lead": "L-5001",
        "order_number": "PT-5001",
        "status_confirmation": "confirmed",
        "status_livrison": "in transit",
        "tracking_number": "EU998877",
        "lead_value": "79.00",
        "name": "João Silva",
        "phone": "+351 912 345 678",
        "email": "joao@example.pt",
        "city": "Lisboa",
        "address": "Rua Augusta 10",
        "zipcod": "1100-053",
        "country": "PT",
        "products": [{"sku": "SKU-2", "quantity": 2}],
        "created_at": "2024-03-14 09:30:00",
    }


@pytest.fixture
def sample_cartpanda_order() -> Dict[str, Any]:
    """One order from a CartPanda-style REST API."""
    return {
        "id": 778899,
        "name": "#1042",
        "status": "paid",
        "payment_status": "paid",
        "fulfillment_status": "fulfilled",
        "total_price": "120.50",
        "email": "buyer@example.com",
        "customer": {"first_name": "Maria", "last_name": "Rossi", "phone": "3331234567"},
        "shipping_address": {
            "name": "Maria Rossi",
            "phone": "+39 333 123 4567",
            "city": "Roma",
            "address1": "Via Roma 1",
            "zip": "00100",
            "country_code": "IT",
        },
        "fulfillments": [{"tracking_number": "CP-TRK-1"}],
        "line_items": [{"sku": "SKU-3", "quantity": 1}],
        "created_at": "2024-03-13T18:00:00Z",
    }


@pytest.fixture
def fhb_account() -> WarehouseAccount:
    """Active FHB account connected at the start of 2024."""
    return WarehouseAccount(
        id="acc-fhb",
        provider=ProviderKey.FHB,
        display_name="FHB Spain",
        credentials={"app_id": "app", "secret": "secret"},
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    """DuckDB store backed by a temporary file."""
    db = DuckDBStore(tmp_path / "test.duckdb")
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def account_with_operation(store, fhb_account):
    """FHB account linked to operation ``op-es`` with prefix ``ES-``."""
    await store.add_account(fhb_account)
    await store.link_operation(AccountOperation(
        account_id=fhb_account.id,
        operation_id="op-es",
        reference_prefix="ES-",
        is_default=True,
    ))
    return fhb_account


@pytest.fixture(autouse=True)
def reset_global_state():
    """Isolate the process-wide event bus, metrics and circuit breakers."""
    events.clear_handlers()
    events.clear_history()
    metrics.reset()
    breakers.reset()
    yield
    events.clear_handlers()
    events.clear_history()
    breakers.reset()


# ═══════════════════════════════════════════════════════════════════════════════
# FAKE PROVIDER
# ═══════════════════════════════════════════════════════════════════════════════

FailureHook = Callable[[date, date, int], Optional[Exception]]


class FakeAdapter(ProviderAdapter):
    """
    In-memory provider serving a fixed number of orders per day.

    ``fail`` may return an exception to raise for a given (start, end, page).
    """

    provider = ProviderKey.FHB

    def __init__(
        self,
        account: WarehouseAccount,
        orders_per_day: Dict[date, int] = None,
        page_size: int = 100,
        fail: Optional[FailureHook] = None,
    ):
        super().__init__(account, base_url="http://fake.invalid")
        self.page_size = page_size
        self.fail = fail
        self.calls: List[tuple] = []
        self._by_day: Dict[date, List[FhbOrder]] = {
            day: [
                FhbOrder.from_api(fhb_payload(
                    f"{day.isoformat()}-{i}",
                    variable_symbol=f"ES-{day.strftime('%m%d')}{i:05d}",
                    created_at=f"{day.isoformat()}T12:00:00Z",
                ))
                for i in range(count)
            ]
            for day, count in (orders_per_day or {}).items()
        }
        self._windows: Dict[tuple, List[FhbOrder]] = {}

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def authenticate(self) -> Token:
        return Token(value="fake", expires_at=datetime.now(timezone.utc) + timedelta(hours=1))

    def _records(self, start: date, end: date) -> List[FhbOrder]:
        key = (start, end)
        if key not in self._windows:
            records = []
            day = start
            while day <= end:
                records.extend(self._by_day.get(day, []))
                day += timedelta(days=1)
            self._windows[key] = records
        return self._windows[key]

    async def fetch_order_history(self, start: date, end: date, page: int) -> HistoryPage:
        self.calls.append((start, end, page))
        if self.fail:
            error = self.fail(start, end, page)
            if error is not None:
                raise error
        records = self._records(start, end)
        offset = (page - 1) * self.page_size
        chunk = records[offset:offset + self.page_size]
        return HistoryPage(records=chunk, has_more=offset + self.page_size < len(records))

    async def fetch_order(self, external_id: str) -> FhbOrder:
        for records in self._by_day.values():
            for record in records:
                if record.external_id == external_id:
                    return record
        raise KeyError(external_id)

    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": "created"}

    @property
    def windows_fetched(self) -> List[tuple]:
        """Distinct (start, end) pairs queried, in call order."""
        seen = []
        for start, end, _ in self.calls:
            if (start, end) not in seen:
                seen.append((start, end))
        return seen


@pytest.fixture
def make_adapter():
    """Factory for FakeAdapter instances."""
    return FakeAdapter


@pytest.fixture
def make_fhb_payload():
    """Factory for FHB order history entries."""
    return fhb_payload
