"""Connection and normalized transaction models shared by the provider adapters."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


Provider = Literal["stripe", "paypal", "wise"]
TransactionType = Literal["Inflow", "Outflow", "Transfer"]


class Connection(BaseModel):
    """A user's link to one provider account, with decrypted credentials.

    Built fresh for every adapter call; never cached across invocations.
    """

    id: str
    user_id: str
    provider: Provider
    account_name: str
    environment: str = "live"
    currency: str | None = None
    last_synced_at: datetime | None = None

    # Stripe
    api_key: str | None = None
    stripe_account_id: str | None = None

    # PayPal
    client_id: str | None = None
    client_secret: str | None = None
    merchant_id: str | None = None

    # Wise
    api_token: str | None = None
    profile_id: str | None = None
    balance_id: str | None = None
    private_key_pem: str | None = None

    webhook_secret: str | None = None

    @property
    def is_sandbox(self) -> bool:
        return self.environment == "sandbox"


class NormalizedTransaction(BaseModel):
    """One provider entry mapped onto the dashboard's transaction row."""

    id: str = Field(..., description="Deterministic key, e.g. 'stripe-txn_123'")
    user_id: str
    date: str  # YYYY-MM-DD
    amount: float = Field(..., ge=0)
    currency: str
    description: str
    type: TransactionType
    account: str
    category: str = "Uncategorized"
    notes: str | None = None
    running_balance: float | None = None
    provider: Provider
    provider_transaction_id: str | None = None

    def to_row(self) -> dict:
        return self.model_dump()
