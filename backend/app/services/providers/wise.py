"""Wise balance-statement adapter.

Statements are returned whole for the requested interval, so the cursor is
always None. Personal tokens hit Strong Customer Authentication on the
statement endpoint: the first call answers 403 with a one-time token in
``x-2fa-approval``; signing that token with the RSA key registered on the
profile and replaying the request with ``X-Signature`` completes it.
"""

import base64
from datetime import datetime, timezone
from decimal import Decimal

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from app.logging_config import get_logger
from app.schemas.connection import Connection, NormalizedTransaction
from app.services.providers.base import (
    FetchResult,
    ProviderAuthError,
    ProviderHttp,
    content_fingerprint,
    direction_from_sign,
    raise_for_provider_status,
)


logger = get_logger("providers.wise")

LIVE_API_BASE = "https://api.transferwise.com"
SANDBOX_API_BASE = "https://api.sandbox.transferwise.tech"

SCA_CHALLENGE_HEADER = "x-2fa-approval"

# Moves between the user's own balances, and Stripe payouts landing in Wise.
TRANSFER_DETAIL_TYPES = frozenset({
    "CONVERSION",
    "INCOMING_CROSS_BALANCE",
    "OUTGOING_CROSS_BALANCE",
})
TRANSFER_DESCRIPTION_MARKERS = ("stripe payments",)


def sign_sca_token(private_key_pem: str, one_time_token: str) -> str:
    """Sign a Wise SCA one-time token (SHA-256, PKCS#1 v1.5) and base64 it."""
    private_key = serialization.load_pem_private_key(
        private_key_pem.encode("utf-8"),
        password=None,
    )
    signature = private_key.sign(
        one_time_token.encode("ascii"),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )
    return base64.b64encode(signature).decode("ascii")


def _wise_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class WiseAdapter:
    name = "wise"

    def __init__(self, client: httpx.Client | None = None):
        self.http = ProviderHttp(self.name, client)

    def base_url(self, connection: Connection) -> str:
        return SANDBOX_API_BASE if connection.is_sandbox else LIVE_API_BASE

    def fetch_page(
        self,
        connection: Connection,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None,
    ) -> FetchResult:
        if not connection.api_token:
            raise ProviderAuthError("Wise connection has no API token")
        if not connection.profile_id or not connection.balance_id:
            raise ProviderAuthError("Wise connection is missing profile_id or balance_id")

        url = (
            f"{self.base_url(connection)}/v1/profiles/{connection.profile_id}"
            f"/balance-statements/{connection.balance_id}/statement.json"
        )
        params = {
            "intervalStart": _wise_timestamp(window_start),
            "intervalEnd": _wise_timestamp(window_end),
            "type": "COMPACT",
        }
        if connection.currency:
            params["currency"] = connection.currency
        headers = {"Authorization": f"Bearer {connection.api_token}"}

        response = self.http.request("GET", url, params=params, headers=headers)

        one_time_token = response.headers.get(SCA_CHALLENGE_HEADER)
        if response.status_code == 403 and one_time_token:
            if not connection.private_key_pem:
                raise ProviderAuthError(
                    "Wise requested SCA approval but the connection has no private key",
                    403,
                )
            logger.debug(f"[WISE] Answering SCA challenge for profile {connection.profile_id}")
            response = self.http.request(
                "GET",
                url,
                params=params,
                headers={
                    **headers,
                    SCA_CHALLENGE_HEADER: one_time_token,
                    "X-Signature": sign_sca_token(connection.private_key_pem, one_time_token),
                },
            )

        raise_for_provider_status(self.name, response)
        data = response.json()

        transactions = [
            self._normalize(entry, connection)
            for entry in data.get("transactions") or []
        ]
        return FetchResult(transactions, None)

    def normalize_amount(self, raw, currency: str) -> Decimal:
        # Wise reports decimal major units.
        return Decimal(str(raw or 0))

    def classify_direction(self, entry: dict, net: Decimal) -> str:
        details = entry.get("details") or {}
        if (details.get("type") or "").upper() in TRANSFER_DETAIL_TYPES:
            return "Transfer"
        description = (details.get("description") or "").lower()
        if any(marker in description for marker in TRANSFER_DESCRIPTION_MARKERS):
            return "Transfer"
        return direction_from_sign(net)

    def _normalize(self, entry: dict, connection: Connection) -> NormalizedTransaction:
        details = entry.get("details") or {}
        amount_info = entry.get("amount") or {}
        currency = amount_info.get("currency") or connection.currency or "USD"
        net = self.normalize_amount(amount_info.get("value"), currency)
        date = (entry.get("date") or "").split("T")[0]
        description = details.get("description") or details.get("type") or entry.get("type") or "Wise Transaction"

        reference = entry.get("referenceNumber")
        if reference:
            tx_id = f"wise-{reference}"
        else:
            tx_id = f"wise-{content_fingerprint(date, net, description, currency)}"

        running_balance = (entry.get("runningBalance") or {}).get("value")

        return NormalizedTransaction(
            id=tx_id,
            user_id=connection.user_id,
            date=date,
            amount=float(abs(net)),
            currency=currency,
            description=description,
            type=self.classify_direction(entry, net),
            account=connection.account_name,
            notes=f"wise_ref:{reference}" if reference else None,
            running_balance=float(running_balance) if running_balance is not None else None,
            provider=self.name,
            provider_transaction_id=reference,
        )
