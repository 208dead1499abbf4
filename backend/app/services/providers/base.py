"""Shared contract, errors and helpers for the provider adapters.

Every adapter exposes the same three calls:

- ``fetch_page(connection, window_start, window_end, cursor)`` returns one
  page of normalized transactions plus the cursor for the next page
  (``None`` once the window is exhausted).
- ``normalize_amount(raw, currency)`` turns the provider's amount encoding
  into decimal units.
- ``classify_direction(entry, net)`` maps an entry onto Inflow, Outflow
  or Transfer.

Adapters are picked by the job's ``provider`` string from the registry in
``app.services.providers``; they share no base class.
"""

import hashlib
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, NamedTuple, Protocol

import httpx

from app.config import get_settings
from app.schemas.connection import Connection, NormalizedTransaction


ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF",
    "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class ProviderError(Exception):
    """A provider call failed. Retried with backoff unless a subclass says otherwise."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Rate limits, 5xx responses, timeouts and transport errors."""


class ProviderAuthError(ProviderError):
    """Credentials were rejected or are missing. Retrying will not help."""


class ResultSetTooLarge(ProviderError):
    """The provider refused the window because it holds too many rows."""


class FetchResult(NamedTuple):
    transactions: list[NormalizedTransaction]
    next_cursor: str | None


class ProviderAdapter(Protocol):
    name: str

    def fetch_page(
        self,
        connection: Connection,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None,
    ) -> FetchResult: ...

    def normalize_amount(self, raw, currency: str) -> Decimal: ...

    def classify_direction(self, entry: dict, net: Decimal) -> str: ...


def direction_from_sign(net: Decimal) -> str:
    return "Inflow" if net >= 0 else "Outflow"


def content_fingerprint(date: str, amount: Decimal, description: str, currency: str) -> str:
    """Stable id for entries that carry no provider id of their own."""
    key = f"{date}|{abs(amount):.2f}|{description.strip().lower()}|{currency.upper()}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    """Translate a non-2xx provider response into the adapter error taxonomy."""
    if response.is_success:
        return
    status = response.status_code
    message = f"{provider} API {status}: {response.text[:500]}"
    if status in (401, 403):
        raise ProviderAuthError(message, status)
    if status in TRANSIENT_STATUS_CODES:
        raise TransientProviderError(message, status)
    raise ProviderError(message, status)


class ProviderHttp:
    """HTTP access for one adapter.

    Uses the injected httpx.Client when there is one; otherwise each call
    opens and closes its own client, the same way the service wrappers
    elsewhere in the app do. Transport failures surface as
    TransientProviderError.
    """

    def __init__(self, provider: str, client: httpx.Client | None = None):
        self.provider = provider
        self._client = client

    @contextmanager
    def _session(self) -> Iterator[httpx.Client]:
        if self._client is not None:
            yield self._client
            return
        with httpx.Client(timeout=get_settings().http_timeout_seconds) as client:
            yield client

    def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            with self._session() as client:
                return client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransientProviderError(f"{self.provider} request failed: {e}") from e
