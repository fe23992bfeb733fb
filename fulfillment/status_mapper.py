"""
Provider status vocabulary -> internal order status.

Every mapping is total: unrecognized or missing values resolve to
``InternalStatus.PENDING`` instead of raising.

European-style leads carry two axes (delivery and confirmation). They
resolve by priority: terminal delivery states, then in-transit states,
then warehouse processing states, then the confirmation axis.
"""
import unicodedata
from typing import Dict, Optional, Union

from fulfillment.models import (
    CartPandaOrder,
    EuropeanLead,
    FhbOrder,
    InternalStatus,
    ProviderKey,
    ProviderOrder,
)

P = InternalStatus

# Vocabulary shared by every provider (covers the common English values)
COMMON_STATUS_MAP: Dict[str, InternalStatus] = {
    "pending": P.PENDING,
    "new": P.PENDING,
    "new order": P.PENDING,
    "processing": P.CONFIRMED,
    "confirmed": P.CONFIRMED,
    "in_warehouse": P.CONFIRMED,
    "unpacked": P.CONFIRMED,
    "redeployment": P.CONFIRMED,
    "shipped": P.SHIPPED,
    "sent": P.SHIPPED,
    "in transit": P.SHIPPED,
    "in_transit": P.SHIPPED,
    "in delivery": P.SHIPPED,
    "out_for_delivery": P.SHIPPED,
    "delivered": P.DELIVERED,
    "cancelled": P.CANCELLED,
    "canceled": P.CANCELLED,
    "rejected": P.CANCELLED,
    "returned": P.RETURNED,
}

# FHB reports: pending, confirmed, sent, delivered, rejected, cancelled, returned
FHB_STATUS_MAP: Dict[str, InternalStatus] = dict(COMMON_STATUS_MAP)

CARTPANDA_STATUS_MAP: Dict[str, InternalStatus] = {
    **COMMON_STATUS_MAP,
    "paid": P.CONFIRMED,
    "authorized": P.CONFIRMED,
    "partially_fulfilled": P.SHIPPED,
    "fulfilled": P.SHIPPED,
    "refunded": P.CANCELLED,
    "voided": P.CANCELLED,
    "chargeback": P.RETURNED,
}

# European delivery axis, grouped by resolution priority
EUROPEAN_TERMINAL_DELIVERY: Dict[str, InternalStatus] = {
    "delivered": P.DELIVERED,
    "returned": P.RETURNED,
    "return": P.RETURNED,
    "rejected": P.CANCELLED,
    "refused": P.CANCELLED,
}
EUROPEAN_IN_TRANSIT = {"shipped", "sent", "in transit", "in_transit", "in delivery", "out_for_delivery"}
EUROPEAN_PROCESSING = {"processing", "unpacked", "redeployment", "in_warehouse", "packed", "prepared"}

EUROPEAN_CONFIRMATION: Dict[str, InternalStatus] = {
    "confirmed": P.CONFIRMED,
    "cancelled": P.CANCELLED,
    "canceled": P.CANCELLED,
    "refused": P.CANCELLED,
    "duplicated": P.CANCELLED,
    "wrong": P.CANCELLED,
}

PROVIDER_MAPS: Dict[ProviderKey, Dict[str, InternalStatus]] = {
    ProviderKey.FHB: FHB_STATUS_MAP,
    ProviderKey.EUROPEAN: COMMON_STATUS_MAP,
    ProviderKey.CARTPANDA: CARTPANDA_STATUS_MAP,
}


def normalize_status(value: Optional[str]) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    if not value:
        return ""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(c for c in text if not unicodedata.combining(c))
    return " ".join(text.lower().split())


def map_status(provider: Union[ProviderKey, str], external_status: Optional[str]) -> InternalStatus:
    """Map a single provider status string to the internal state set."""
    try:
        table = PROVIDER_MAPS[ProviderKey(provider)]
    except ValueError:
        table = COMMON_STATUS_MAP
    return table.get(normalize_status(external_status), P.PENDING)


def resolve_european(delivery: Optional[str], confirmation: Optional[str]) -> InternalStatus:
    """Resolve a two-axis lead status."""
    delivery_key = normalize_status(delivery)
    confirmation_key = normalize_status(confirmation)

    if delivery_key in EUROPEAN_TERMINAL_DELIVERY:
        return EUROPEAN_TERMINAL_DELIVERY[delivery_key]
    if delivery_key in EUROPEAN_IN_TRANSIT:
        return P.SHIPPED
    if delivery_key in EUROPEAN_PROCESSING:
        return P.CONFIRMED
    return EUROPEAN_CONFIRMATION.get(confirmation_key, P.PENDING)


def map_record_status(record: ProviderOrder) -> InternalStatus:
    """Map a typed provider record to its internal status."""
    if isinstance(record, EuropeanLead):
        return resolve_european(record.delivery_status, record.confirmation_status)
    if isinstance(record, CartPandaOrder):
        # Fulfillment progress is more specific than the order status
        fulfillment = map_status(ProviderKey.CARTPANDA, record.fulfillment_status)
        if record.fulfillment_status and fulfillment != P.PENDING:
            status = map_status(ProviderKey.CARTPANDA, record.status)
            if status in (P.CANCELLED, P.RETURNED, P.DELIVERED):
                return status
            return fulfillment
        return map_status(ProviderKey.CARTPANDA, record.status)
    if isinstance(record, FhbOrder):
        return map_status(ProviderKey.FHB, record.status)
    return map_status(record.provider, record.status)
