"""Provider adapters, selected by the job's provider string."""

import httpx

from app.services.providers.base import (
    FetchResult,
    ProviderAdapter,
    ProviderAuthError,
    ProviderError,
    ResultSetTooLarge,
    TransientProviderError,
)
from app.services.providers.paypal import PayPalAdapter
from app.services.providers.stripe import StripeAdapter
from app.services.providers.wise import WiseAdapter


ADAPTERS = {
    "stripe": StripeAdapter,
    "paypal": PayPalAdapter,
    "wise": WiseAdapter,
}


def get_adapter(provider: str, client: httpx.Client | None = None) -> ProviderAdapter:
    """Return the adapter for a provider.

    Raises:
        ValueError: If the provider is not supported.
    """
    try:
        adapter_cls = ADAPTERS[provider]
    except KeyError:
        raise ValueError(f"Unsupported provider: {provider}")
    return adapter_cls(client)


__all__ = [
    "ADAPTERS",
    "FetchResult",
    "PayPalAdapter",
    "ProviderAdapter",
    "ProviderAuthError",
    "ProviderError",
    "ResultSetTooLarge",
    "StripeAdapter",
    "TransientProviderError",
    "WiseAdapter",
    "get_adapter",
]
