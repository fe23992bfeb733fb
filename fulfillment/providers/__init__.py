"""
Provider adapters and the factory that builds them from warehouse accounts.

Usage:
    from fulfillment.providers import create_adapter

    async with create_adapter(account) as adapter:
        check = await adapter.test_connection()
"""
from typing import Any, Dict, List, Tuple, Type

from fulfillment.exceptions import UnknownProviderError, ValidationError
from fulfillment.models import ProviderKey, WarehouseAccount
from fulfillment.providers.base import ProviderAdapter
from fulfillment.providers.cartpanda import CartPandaAdapter
from fulfillment.providers.european import EuropeanFulfillmentAdapter
from fulfillment.providers.fhb import FhbAdapter

ADAPTERS: Dict[ProviderKey, Type[ProviderAdapter]] = {
    ProviderKey.FHB: FhbAdapter,
    ProviderKey.EUROPEAN: EuropeanFulfillmentAdapter,
    ProviderKey.CARTPANDA: CartPandaAdapter,
}

REQUIRED_CREDENTIALS: Dict[ProviderKey, Tuple[str, ...]] = {
    ProviderKey.FHB: ("app_id", "secret"),
    ProviderKey.EUROPEAN: ("email", "password", "country"),
    ProviderKey.CARTPANDA: ("store_slug", "api_token"),
}


def _provider_key(provider: Any) -> ProviderKey:
    try:
        return ProviderKey(provider)
    except ValueError:
        raise UnknownProviderError(str(provider))


def validate_credentials(provider: Any, credentials: Dict[str, Any]) -> None:
    """
    Check a credential blob has every field the provider needs.

    Raises:
        UnknownProviderError: Provider key is not supported
        ValidationError: A required field is missing or blank
    """
    key = _provider_key(provider)
    if not isinstance(credentials, dict):
        raise ValidationError("credentials", "must be an object", type(credentials).__name__)
    for field_name in REQUIRED_CREDENTIALS[key]:
        value = credentials.get(field_name)
        if value is None or not str(value).strip():
            raise ValidationError(
                f"credentials.{field_name}", f"is required for {key.display_name}"
            )


def create_adapter(account: WarehouseAccount, **kwargs) -> ProviderAdapter:
    """Build the adapter for an account after validating its credentials."""
    key = _provider_key(account.provider)
    validate_credentials(key, account.credentials)
    return ADAPTERS[key](account, **kwargs)


def available_providers() -> List[Dict[str, Any]]:
    """Supported providers with the credential fields each expects."""
    return [
        {
            "key": key.value,
            "name": key.display_name,
            "required_credentials": list(REQUIRED_CREDENTIALS[key]),
        }
        for key in ADAPTERS
    ]


__all__ = [
    "ProviderAdapter",
    "FhbAdapter",
    "EuropeanFulfillmentAdapter",
    "CartPandaAdapter",
    "create_adapter",
    "validate_credentials",
    "available_providers",
]
