"""Stripe balance-transaction adapter.

Stripe authenticates with the secret key as the basic-auth username and
pages with ``starting_after`` (the id of the last entry on the previous
page). Amounts come back in minor units except for zero-decimal currencies.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal

import httpx

from app.schemas.connection import Connection, NormalizedTransaction
from app.services.providers.base import (
    ZERO_DECIMAL_CURRENCIES,
    FetchResult,
    ProviderAuthError,
    ProviderHttp,
    direction_from_sign,
    raise_for_provider_status,
)


STRIPE_API_BASE = "https://api.stripe.com"
PAGE_SIZE = 100

TRANSFER_TYPES = frozenset({"payout", "payout_cancel", "payout_failure"})
RESERVE_PATTERN = re.compile(r"reserve", re.IGNORECASE)


class StripeAdapter:
    name = "stripe"

    def __init__(self, client: httpx.Client | None = None):
        self.http = ProviderHttp(self.name, client)

    def fetch_page(
        self,
        connection: Connection,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None,
    ) -> FetchResult:
        if not connection.api_key:
            raise ProviderAuthError("Stripe connection has no API key")

        params = {
            "limit": str(PAGE_SIZE),
            "created[gte]": str(int(window_start.timestamp())),
            "created[lt]": str(int(window_end.timestamp())),
        }
        if cursor:
            params["starting_after"] = cursor

        response = self.http.request(
            "GET",
            f"{STRIPE_API_BASE}/v1/balance_transactions",
            params=params,
            auth=(connection.api_key, ""),
        )
        raise_for_provider_status(self.name, response)
        data = response.json()

        entries = data.get("data") or []
        transactions = [self._normalize(entry, connection) for entry in entries]

        next_cursor = entries[-1]["id"] if data.get("has_more") and entries else None
        return FetchResult(transactions, next_cursor)

    def normalize_amount(self, raw, currency: str) -> Decimal:
        amount = Decimal(str(raw or 0))
        if currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return amount
        return amount / 100

    def classify_direction(self, entry: dict, net: Decimal) -> str:
        entry_type = entry.get("type") or ""
        if entry_type in TRANSFER_TYPES:
            return "Transfer"
        # reserve_transaction, reserved_funds, "Reserve release" ...
        if RESERVE_PATTERN.search(f"{entry_type} {entry.get('description') or ''}"):
            return "Transfer"
        return direction_from_sign(net)

    def _normalize(self, entry: dict, connection: Connection) -> NormalizedTransaction:
        currency = (entry.get("currency") or "usd").upper()
        net = self.normalize_amount(entry.get("net"), currency)
        gross = self.normalize_amount(entry.get("amount"), currency)
        fee = self.normalize_amount(entry.get("fee"), currency)
        created = datetime.fromtimestamp(entry.get("created") or 0, tz=timezone.utc)

        notes = f"stripe_bt:{entry['id']}"
        if fee:
            notes += f" | Fee: -{fee:.2f} {currency}"
        if gross != net:
            notes += f" | Gross: {gross:.2f} {currency}"

        return NormalizedTransaction(
            id=f"stripe-{entry['id']}",
            user_id=connection.user_id,
            date=created.date().isoformat(),
            amount=float(abs(net)),
            currency=currency,
            description=entry.get("description") or entry.get("type") or "Stripe Transaction",
            type=self.classify_direction(entry, net),
            account=connection.account_name,
            notes=notes,
            provider=self.name,
            provider_transaction_id=entry["id"],
        )
