"""Load provider connections with their secrets decrypted."""

from app.database import Database
from app.schemas.connection import Connection
from app.utils.encryption import decrypt_fields


SECRET_FIELDS = ("api_key", "client_secret", "api_token", "private_key_pem", "webhook_secret")

PROVIDERS = ("stripe", "paypal", "wise")


def connection_from_row(provider: str, row: dict) -> Connection:
    """Build a Connection from a raw connection row, decrypting secret columns."""
    decrypted = decrypt_fields(row, SECRET_FIELDS)
    for field in ("profile_id", "balance_id"):
        if decrypted.get(field) is not None:
            decrypted[field] = str(decrypted[field])
    return Connection(**{**decrypted, "provider": provider})


def load_connection(db: Database, provider: str, connection_id: str) -> Connection | None:
    row = db.get_connection(provider, connection_id)
    if row is None:
        return None
    return connection_from_row(provider, row)


def list_provider_connections(db: Database, provider: str) -> list[Connection]:
    return [connection_from_row(provider, row) for row in db.list_connections(provider)]
