"""
Domain models for fulfillment sync.

Provides type-safe dataclasses for warehouse accounts, staging rows, internal
orders and sync runs, plus the typed provider records decoded at the adapter
boundary (one class per provider, see ``RECORD_TYPES``).
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from fulfillment.exceptions import ProviderDataError


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class InternalStatus(str, Enum):
    """Platform order status shared by every provider."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class ProviderKey(str, Enum):
    """Supported fulfillment/carrier providers."""
    FHB = "fhb"
    EUROPEAN = "european_fulfillment"
    CARTPANDA = "cartpanda"

    @property
    def display_name(self) -> str:
        names = {
            ProviderKey.FHB: "FHB Logistics",
            ProviderKey.EUROPEAN: "European Fulfillment Center",
            ProviderKey.CARTPANDA: "CartPanda",
        }
        return names[self]


class SyncTier(str, Enum):
    """Scheduling tiers, highest priority first."""
    INITIAL = "initial"
    DEEP = "deep"
    FAST = "fast"

    @property
    def priority(self) -> int:
        """Lower value runs first."""
        return {SyncTier.INITIAL: 0, SyncTier.DEEP: 1, SyncTier.FAST: 2}[self]


class RunStatus(str, Enum):
    """Sync run lifecycle."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class InitialSyncStatus(str, Enum):
    """Historical backfill progress of one account."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AccountStatus(str, Enum):
    """Warehouse account status."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class UpsertOutcome(str, Enum):
    """Result of staging one provider record."""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


# ═══════════════════════════════════════════════════════════════════════════════
# PARSING HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-ish timestamps from provider payloads; None when unparseable."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00").replace(" ", "T", 1))
    except (ValueError, TypeError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _require_mapping(data: Any, provider: "ProviderKey") -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ProviderDataError(
            f"Unexpected {provider.value} record",
            expected="object",
            got=type(data).__name__,
        )
    return data


# ═══════════════════════════════════════════════════════════════════════════════
# PROVIDER RECORDS (tagged union decoded at the adapter boundary)
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Recipient:
    """Shipment recipient as reported by the provider."""
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "city": self.city,
            "address": self.address,
            "zip": self.zip,
            "country": self.country,
        }


@dataclass
class ProviderRecord:
    """Fields every provider record exposes to staging and reconciliation."""
    provider: ClassVar[ProviderKey]

    external_id: Optional[str] = None
    reference: Optional[str] = None
    status: Optional[str] = None
    tracking_number: Optional[str] = None
    value: Optional[float] = None
    recipient: Recipient = field(default_factory=Recipient)
    items: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FhbOrder(ProviderRecord):
    """Order from an FHB-style token API (``/order/history``)."""
    provider: ClassVar[ProviderKey] = ProviderKey.FHB

    variable_symbol: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> "FhbOrder":
        """Create FhbOrder from an order history entry."""
        data = _require_mapping(data, cls.provider)
        recipient = data.get("recipient") or {}
        address = recipient.get("address") or {}
        contact = recipient.get("contact") or {}
        if not isinstance(contact, dict):
            contact = {"phone": contact}

        variable_symbol = _to_str(data.get("variable_symbol"))
        return cls(
            external_id=_to_str(data.get("id")),
            reference=variable_symbol,
            status=_to_str(data.get("status")),
            tracking_number=_to_str(data.get("tracking")),
            value=_to_float(data.get("value")),
            recipient=Recipient(
                name=_to_str(address.get("name")),
                phone=_to_str(contact.get("phone")),
                email=_to_str(contact.get("email")),
                city=_to_str(address.get("city")),
                address=_to_str(address.get("street")),
                zip=_to_str(address.get("zip")),
                country=_to_str(address.get("country")),
            ),
            items=list(data.get("items") or []),
            created_at=parse_datetime(data.get("created_at")),
            raw=data,
            variable_symbol=variable_symbol,
        )


@dataclass
class EuropeanLead(ProviderRecord):
    """
    Lead from a European-style lead API (``api/leads``).

    Leads carry two independent status axes: ``status_confirmation`` (call
    center outcome) and ``status_livrison`` (delivery progress).
    """
    provider: ClassVar[ProviderKey] = ProviderKey.EUROPEAN

    confirmation_status: Optional[str] = None
    delivery_status: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> "EuropeanLead":
        """Create EuropeanLead from a leads list or details entry."""
        data = _require_mapping(data, cls.provider)
        lead_number = _to_str(_first(data, "n_lead", "number", "lead_number", "id"))
        confirmation = _to_str(data.get("status_confirmation"))
        delivery = _to_str(data.get("status_livrison"))

        return cls(
            external_id=lead_number,
            reference=_to_str(_first(data, "order_number", "n_order")) or lead_number,
            status=delivery or confirmation,
            tracking_number=_to_str(_first(data, "tracking_number", "tracking")),
            value=_to_float(data.get("lead_value")),
            recipient=Recipient(
                name=_to_str(_first(data, "name", "customer_name")),
                phone=_to_str(_first(data, "phone", "customer_phone")),
                email=_to_str(_first(data, "email", "customer_email")),
                city=_to_str(data.get("city")),
                address=_to_str(data.get("address")),
                zip=_to_str(data.get("zipcod") or data.get("zip")),
                country=_to_str(data.get("country")),
            ),
            items=list(data.get("products") or data.get("items") or []),
            created_at=parse_datetime(data.get("created_at")),
            raw=data,
            confirmation_status=confirmation,
            delivery_status=delivery,
        )


@dataclass
class CartPandaOrder(ProviderRecord):
    """Order from a CartPanda-style REST API (``/{store}/orders``)."""
    provider: ClassVar[ProviderKey] = ProviderKey.CARTPANDA

    payment_status: Optional[str] = None
    fulfillment_status: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> "CartPandaOrder":
        """Create CartPandaOrder from an orders list entry."""
        data = _require_mapping(data, cls.provider)
        customer = data.get("customer") or {}
        shipping = data.get("shipping_address") or {}
        fulfillments = data.get("fulfillments") or []
        tracking = _to_str(data.get("tracking_number"))
        if not tracking and fulfillments and isinstance(fulfillments[0], dict):
            tracking = _to_str(fulfillments[0].get("tracking_number"))

        full_name = " ".join(
            p for p in (customer.get("first_name"), customer.get("last_name")) if p
        )
        return cls(
            external_id=_to_str(data.get("id")),
            reference=_to_str(_first(data, "name", "order_number", "number")),
            status=_to_str(data.get("status")),
            tracking_number=tracking,
            value=_to_float(_first(data, "total_amount", "total_price")),
            recipient=Recipient(
                name=_to_str(shipping.get("name")) or _to_str(full_name),
                phone=_to_str(_first(shipping, "phone") or _first(data, "phone") or customer.get("phone")),
                email=_to_str(data.get("email") or customer.get("email")),
                city=_to_str(shipping.get("city")),
                address=_to_str(_first(shipping, "address1", "address")),
                zip=_to_str(shipping.get("zip")),
                country=_to_str(_first(shipping, "country_code", "country")),
            ),
            items=list(data.get("line_items") or []),
            created_at=parse_datetime(data.get("created_at")),
            raw=data,
            payment_status=_to_str(data.get("payment_status")),
            fulfillment_status=_to_str(data.get("fulfillment_status")),
        )


ProviderOrder = Union[FhbOrder, EuropeanLead, CartPandaOrder]

RECORD_TYPES = {
    ProviderKey.FHB: FhbOrder,
    ProviderKey.EUROPEAN: EuropeanLead,
    ProviderKey.CARTPANDA: CartPandaOrder,
}


def decode_record(provider: Union[ProviderKey, str], payload: Any) -> ProviderOrder:
    """Rebuild the typed record for a provider from its raw payload."""
    try:
        key = ProviderKey(provider)
    except ValueError:
        raise ProviderDataError("Unknown provider for record", details=str(provider))
    return RECORD_TYPES[key].from_api(payload)


# ═══════════════════════════════════════════════════════════════════════════════
# ADAPTER CONTRACT VALUES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Token:
    """Provider access token."""
    value: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None, margin: timedelta = timedelta(minutes=5)) -> bool:
        """True once within ``margin`` of expiry."""
        return (now or utcnow()) >= self.expires_at - margin


@dataclass
class ConnectionCheck:
    """Result of ``test_connection``."""
    ok: bool
    message: str


@dataclass
class HistoryPage:
    """One page of provider order history."""
    records: List[ProviderOrder]
    has_more: bool
    skipped: int = 0  # entries that failed to decode


# ═══════════════════════════════════════════════════════════════════════════════
# PERSISTED ENTITIES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class WarehouseAccount:
    """One credentialed connection to a provider."""
    id: str
    provider: ProviderKey
    display_name: str
    credentials: Dict[str, Any] = field(default_factory=dict)
    status: AccountStatus = AccountStatus.ACTIVE
    initial_sync_completed: bool = False
    initial_sync_completed_at: Optional[datetime] = None
    initial_sync_status: Optional[InitialSyncStatus] = None
    initial_sync_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WarehouseAccount":
        """Create WarehouseAccount from a store row."""
        return cls(
            id=row["id"],
            provider=ProviderKey(row["provider"]),
            display_name=row["display_name"],
            credentials=row.get("credentials") or {},
            status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
            initial_sync_completed=bool(row.get("initial_sync_completed")),
            initial_sync_completed_at=row.get("initial_sync_completed_at"),
            initial_sync_status=(
                InitialSyncStatus(row["initial_sync_status"])
                if row.get("initial_sync_status") else None
            ),
            initial_sync_error=row.get("initial_sync_error"),
            last_sync_at=row.get("last_sync_at"),
            created_at=row.get("created_at"),
        )

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def needs_initial_sync(self) -> bool:
        return self.is_active and not self.initial_sync_completed

    def age_days(self, today: date) -> int:
        """Days since the account was connected (0 when unknown)."""
        if not self.created_at:
            return 0
        return max((today - self.created_at.date()).days, 0)


@dataclass
class AccountOperation:
    """Link between a warehouse account and a tenant operation."""
    account_id: str
    operation_id: str
    reference_prefix: Optional[str] = None
    is_default: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AccountOperation":
        return cls(
            account_id=row["account_id"],
            operation_id=row["operation_id"],
            reference_prefix=row.get("reference_prefix"),
            is_default=bool(row.get("is_default")),
        )


@dataclass
class SyncRun:
    """Append-only log entry for one account sync run."""
    id: str
    account_id: str
    sync_type: SyncTier
    status: RunStatus = RunStatus.STARTED
    orders_processed: int = 0
    orders_created: int = 0
    orders_updated: int = 0
    orders_skipped: int = 0
    windows_total: int = 0
    windows_failed: int = 0
    hit_page_ceiling: bool = False
    duration_ms: Optional[float] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SyncRun":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            sync_type=SyncTier(row["sync_type"]),
            status=RunStatus(row["status"]),
            orders_processed=row.get("orders_processed") or 0,
            orders_created=row.get("orders_created") or 0,
            orders_updated=row.get("orders_updated") or 0,
            orders_skipped=row.get("orders_skipped") or 0,
            windows_total=row.get("windows_total") or 0,
            windows_failed=row.get("windows_failed") or 0,
            hit_page_ceiling=bool(row.get("hit_page_ceiling")),
            duration_ms=row.get("duration_ms"),
            error_message=row.get("error_message"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "sync_type": self.sync_type.value,
            "status": self.status.value,
            "orders_processed": self.orders_processed,
            "orders_created": self.orders_created,
            "orders_updated": self.orders_updated,
            "orders_skipped": self.orders_skipped,
            "windows_total": self.windows_total,
            "windows_failed": self.windows_failed,
            "hit_page_ceiling": self.hit_page_ceiling,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class StagingOrder:
    """Raw provider record persisted before reconciliation."""
    id: int
    account_id: str
    provider: ProviderKey
    external_order_id: str
    reference: Optional[str] = None
    external_status: Optional[str] = None
    tracking_number: Optional[str] = None
    value: Optional[float] = None
    recipient: Dict[str, Any] = field(default_factory=dict)
    items: List[Dict[str, Any]] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)
    processed_to_orders: bool = False
    processed_at: Optional[datetime] = None
    linked_order_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StagingOrder":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            provider=ProviderKey(row["provider"]),
            external_order_id=row["external_order_id"],
            reference=row.get("reference"),
            external_status=row.get("external_status"),
            tracking_number=row.get("tracking_number"),
            value=row.get("value"),
            recipient=row.get("recipient") or {},
            items=row.get("items") or [],
            raw=row.get("raw_payload") or {},
            processed_to_orders=bool(row.get("processed_to_orders")),
            processed_at=row.get("processed_at"),
            linked_order_id=row.get("linked_order_id"),
        )

    def record(self) -> ProviderOrder:
        """Typed provider record decoded from the staged payload."""
        return decode_record(self.provider, self.raw)


@dataclass
class Order:
    """Internal platform order (fields this engine reads or writes)."""
    id: str
    operation_id: str
    order_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    customer_city: Optional[str] = None
    status: InternalStatus = InternalStatus.PENDING
    tracking_number: Optional[str] = None
    carrier_account_id: Optional[str] = None
    carrier_order_id: Optional[str] = None
    carrier_matched_at: Optional[datetime] = None
    provider_data: Dict[str, Any] = field(default_factory=dict)
    last_status_update: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        return cls(
            id=row["id"],
            operation_id=row["operation_id"],
            order_number=row.get("order_number"),
            customer_name=row.get("customer_name"),
            customer_phone=row.get("customer_phone"),
            customer_email=row.get("customer_email"),
            customer_city=row.get("customer_city"),
            status=InternalStatus(row.get("status") or InternalStatus.PENDING.value),
            tracking_number=row.get("tracking_number"),
            carrier_account_id=row.get("carrier_account_id"),
            carrier_order_id=row.get("carrier_order_id"),
            carrier_matched_at=row.get("carrier_matched_at"),
            provider_data=row.get("provider_data") or {},
            last_status_update=row.get("last_status_update"),
            created_at=row.get("created_at"),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC WINDOWS (ephemeral)
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SyncWindow:
    """
    Inclusive day range ``[start, end]`` queried from a provider.

    ``depth`` counts how many bisections produced this window.
    """
    start: date
    end: date
    depth: int = 0

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Window end {self.end} before start {self.start}")

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    @property
    def is_single_day(self) -> bool:
        return self.start == self.end

    def split(self) -> Tuple["SyncWindow", "SyncWindow"]:
        """Bisect at the temporal midpoint; both halves are strictly shorter."""
        if self.is_single_day:
            raise ValueError("Cannot split a single-day window")
        mid = self.start + timedelta(days=(self.days - 1) // 2)
        return (
            SyncWindow(self.start, mid, self.depth + 1),
            SyncWindow(mid + timedelta(days=1), self.end, self.depth + 1),
        )

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


def build_windows(end: date, lookback_days: int, window_days: int) -> List[SyncWindow]:
    """
    Cover the ``lookback_days`` ending at ``end`` (inclusive) with windows of
    at most ``window_days``, oldest first.
    """
    if lookback_days < 1:
        return []
    start = end - timedelta(days=lookback_days - 1)
    windows = []
    cursor = start
    while cursor <= end:
        window_end = min(cursor + timedelta(days=window_days - 1), end)
        windows.append(SyncWindow(cursor, window_end))
        cursor = window_end + timedelta(days=1)
    return windows
