"""PayPal Transaction Search adapter.

Every call fetches a fresh OAuth2 client-credentials token, then reads one
page of ``/v1/reporting/transactions``. The cursor is the next page number.
The reporting API refuses windows that match too many rows with a 400
``RESULTSET_TOO_LARGE`` rather than paging through them; that surfaces as
ResultSetTooLarge so the job gets split.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

import httpx

from app.logging_config import get_logger
from app.schemas.connection import Connection, NormalizedTransaction
from app.services.providers.base import (
    FetchResult,
    ProviderAuthError,
    ProviderHttp,
    ResultSetTooLarge,
    direction_from_sign,
    raise_for_provider_status,
)


logger = get_logger("providers.paypal")

LIVE_API_BASE = "https://api-m.paypal.com"
SANDBOX_API_BASE = "https://api-m.sandbox.paypal.com"
PAGE_SIZE = 100

# T03xx bank deposits into PayPal, T04xx withdrawals to a bank,
# T15xx holds and reserve releases.
TRANSFER_EVENT_CODE_PREFIXES = ("T03", "T04", "T15")


def _paypal_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S%z")


def _decimal(value) -> Decimal:
    try:
        return Decimal(str(value or "0"))
    except InvalidOperation:
        return Decimal("0")


class PayPalAdapter:
    name = "paypal"

    def __init__(self, client: httpx.Client | None = None):
        self.http = ProviderHttp(self.name, client)

    def base_url(self, connection: Connection) -> str:
        return SANDBOX_API_BASE if connection.is_sandbox else LIVE_API_BASE

    def get_access_token(self, connection: Connection) -> str:
        """Exchange client credentials for a short-lived bearer token."""
        if not connection.client_id or not connection.client_secret:
            raise ProviderAuthError("PayPal connection is missing client credentials")

        response = self.http.request(
            "POST",
            f"{self.base_url(connection)}/v1/oauth2/token",
            auth=(connection.client_id, connection.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if response.status_code in (400, 401):
            # invalid_client comes back as 401, disabled apps as 400
            raise ProviderAuthError(
                f"PayPal OAuth {response.status_code}: {response.text[:500]}",
                response.status_code,
            )
        raise_for_provider_status(self.name, response)
        return response.json()["access_token"]

    def fetch_page(
        self,
        connection: Connection,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None,
    ) -> FetchResult:
        token = self.get_access_token(connection)
        page = int(cursor) if cursor else 1

        response = self.http.request(
            "GET",
            f"{self.base_url(connection)}/v1/reporting/transactions",
            params={
                "start_date": _paypal_timestamp(window_start),
                "end_date": _paypal_timestamp(window_end),
                "fields": "all",
                "page_size": str(PAGE_SIZE),
                "page": str(page),
            },
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code == 400 and "RESULTSET_TOO_LARGE" in response.text:
            logger.info(
                f"[PAYPAL] RESULTSET_TOO_LARGE for {window_start.isoformat()} - {window_end.isoformat()}"
            )
            raise ResultSetTooLarge(
                f"PayPal RESULTSET_TOO_LARGE for {window_start.isoformat()} - {window_end.isoformat()}",
                400,
            )
        raise_for_provider_status(self.name, response)
        data = response.json()

        transactions = []
        for detail in data.get("transaction_details") or []:
            tx = self._normalize(detail, connection)
            if tx is not None:
                transactions.append(tx)

        total_pages = data.get("total_pages") or 1
        next_cursor = str(page + 1) if page < total_pages else None
        return FetchResult(transactions, next_cursor)

    def normalize_amount(self, raw, currency: str) -> Decimal:
        # PayPal reports decimal strings in major units for every currency.
        return _decimal(raw)

    def classify_direction(self, entry: dict, net: Decimal) -> str:
        event_code = entry.get("transaction_event_code") or ""
        if event_code.startswith(TRANSFER_EVENT_CODE_PREFIXES):
            return "Transfer"
        return direction_from_sign(net)

    def _normalize(self, detail: dict, connection: Connection) -> NormalizedTransaction | None:
        info = detail.get("transaction_info") or {}
        payer = detail.get("payer_info") or {}
        transaction_id = info.get("transaction_id")
        if not transaction_id:
            logger.warning("[PAYPAL] Skipping entry without transaction_id")
            return None

        initiated = info.get("transaction_initiation_date")
        if not initiated:
            logger.warning(f"[PAYPAL] Skipping {transaction_id}: no transaction_initiation_date")
            return None

        amount_info = info.get("transaction_amount") or {}
        currency = amount_info.get("currency_code") or connection.currency or "USD"
        gross = self.normalize_amount(amount_info.get("value"), currency)
        fee = self.normalize_amount((info.get("fee_amount") or {}).get("value"), currency)
        net = gross + fee  # fee is reported as a negative amount

        description = (
            info.get("transaction_subject")
            or info.get("transaction_note")
            or (payer.get("payer_name") or {}).get("alternate_full_name")
            or info.get("transaction_event_code")
            or "PayPal Transaction"
        )

        notes = f"paypal_tx:{transaction_id}"
        if fee:
            notes += f" | Fee: {fee} {currency}"

        return NormalizedTransaction(
            id=f"paypal-{transaction_id}",
            user_id=connection.user_id,
            date=initiated.split("T")[0],
            amount=float(abs(net)),
            currency=currency,
            description=description,
            type=self.classify_direction(info, net),
            account=connection.account_name,
            notes=notes,
            provider=self.name,
            provider_transaction_id=transaction_id,
        )
