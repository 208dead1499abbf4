"""Supabase client setup and database utilities."""

from postgrest import SyncPostgrestClient
from postgrest.exceptions import APIError
from supabase import Client, create_client

from app.config import get_settings


UNIQUE_VIOLATION = "23505"

CONNECTION_TABLES = {
    "stripe": "stripe_connections",
    "paypal": "paypal_connections",
    "wise": "wise_connections",
}


def get_admin_client() -> Client:
    """Get Supabase admin client using service_role key (NO CACHE).

    Bypasses RLS - the sync core owns sync_jobs, sync_sessions,
    webhook_events and the provider secrets on connection rows.

    Note: Not cached to avoid shared state issues across requests.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_service_role_key or settings.supabase_secret_key
    )


def get_authenticated_postgrest_client(access_token: str) -> SyncPostgrestClient:
    """Create a PostgREST client authenticated with the user's JWT."""
    settings = get_settings()
    return SyncPostgrestClient(
        base_url=f"{settings.supabase_url}/rest/v1",
        headers={
            "apikey": settings.supabase_publishable_key,
            "Authorization": f"Bearer {access_token}",
        },
    )


def get_db() -> "Database":
    """Dependency for getting an admin Database in routes and cron tasks."""
    return Database(get_admin_client())


class Database:
    """Database helper class for the sync core.

    Every table and RPC the scheduler touches goes through here so the
    services never build PostgREST queries themselves.
    """

    def __init__(self, client: Client | SyncPostgrestClient):
        self.client = client

    # --- Users ---

    def get_user_by_id(self, user_id: str) -> dict | None:
        result = self.client.table("users").select("*").eq("id", user_id).execute()
        return result.data[0] if result.data else None

    def create_user(self, user_data: dict) -> dict | None:
        result = self.client.table("users").insert(user_data).execute()
        return result.data[0] if result.data else None

    # --- Connections ---

    def get_connection(self, provider: str, connection_id: str) -> dict | None:
        result = (
            self.client.table(CONNECTION_TABLES[provider])
            .select("*")
            .eq("id", connection_id)
            .execute()
        )
        return result.data[0] if result.data else None

    def list_connections(self, provider: str) -> list[dict]:
        result = (
            self.client.table(CONNECTION_TABLES[provider])
            .select("*")
            .order("created_at")
            .execute()
        )
        return result.data

    def find_connections(self, provider: str, column: str, value: str) -> list[dict]:
        result = (
            self.client.table(CONNECTION_TABLES[provider])
            .select("*")
            .eq(column, value)
            .execute()
        )
        return result.data

    def update_connection(self, provider: str, connection_id: str, data: dict) -> dict | None:
        result = (
            self.client.table(CONNECTION_TABLES[provider])
            .update(data)
            .eq("id", connection_id)
            .execute()
        )
        return result.data[0] if result.data else None

    # --- Sync Jobs ---

    def create_sync_job(self, job_data: dict) -> dict:
        result = self.client.table("sync_jobs").insert(job_data).execute()
        return result.data[0]

    def create_sync_jobs(self, jobs: list[dict]) -> list[dict]:
        if not jobs:
            return []
        result = self.client.table("sync_jobs").insert(jobs).execute()
        return result.data

    def claim_next_sync_job(self) -> dict | None:
        """Atomically claim the next eligible pending job.

        Runs the claim_next_sync_job() SQL function, which selects with
        FOR UPDATE SKIP LOCKED and flips the row to running in the same
        statement.
        """
        result = self.client.rpc("claim_next_sync_job", {}).execute()
        rows = result.data or []
        if isinstance(rows, dict):
            rows = [rows]
        return rows[0] if rows and rows[0].get("id") else None

    def get_sync_job_by_id(self, job_id: str) -> dict | None:
        result = self.client.table("sync_jobs").select("*").eq("id", job_id).execute()
        return result.data[0] if result.data else None

    def update_sync_job(self, job_id: str, data: dict) -> dict | None:
        result = self.client.table("sync_jobs").update(data).eq("id", job_id).execute()
        return result.data[0] if result.data else None

    def update_claimed_sync_job(self, job_id: str, claimed_at: str, data: dict) -> dict | None:
        """Update a running job only while the caller still holds its claim.

        Returns None when the job was requeued or reclaimed in the meantime.
        """
        result = (
            self.client.table("sync_jobs")
            .update(data)
            .eq("id", job_id)
            .eq("status", "running")
            .eq("claimed_at", claimed_at)
            .execute()
        )
        return result.data[0] if result.data else None

    def get_session_jobs(self, session_id: str) -> list[dict]:
        result = (
            self.client.table("sync_jobs")
            .select("*")
            .eq("session_id", session_id)
            .order("chunk_start")
            .execute()
        )
        return result.data

    def get_open_jobs_for_connection(self, connection_id: str, job_types: list[str]) -> list[dict]:
        result = (
            self.client.table("sync_jobs")
            .select("id, status, job_type")
            .eq("connection_id", connection_id)
            .in_("job_type", job_types)
            .in_("status", ["pending", "running"])
            .execute()
        )
        return result.data

    def get_stale_running_jobs(self, claimed_before: str) -> list[dict]:
        result = (
            self.client.table("sync_jobs")
            .select("*")
            .eq("status", "running")
            .lt("claimed_at", claimed_before)
            .execute()
        )
        return result.data

    # --- Sync Sessions ---

    def create_sync_session(self, session_data: dict) -> dict:
        result = self.client.table("sync_sessions").insert(session_data).execute()
        return result.data[0]

    def get_sync_session_by_id(self, session_id: str) -> dict | None:
        result = (
            self.client.table("sync_sessions")
            .select("*")
            .eq("id", session_id)
            .execute()
        )
        return result.data[0] if result.data else None

    def get_sync_sessions_for_connection(self, connection_id: str, limit: int = 20) -> list[dict]:
        result = (
            self.client.table("sync_sessions")
            .select("*")
            .eq("connection_id", connection_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return result.data

    def update_sync_session(self, session_id: str, data: dict) -> dict | None:
        result = (
            self.client.table("sync_sessions")
            .update(data)
            .eq("id", session_id)
            .execute()
        )
        return result.data[0] if result.data else None

    # --- Webhook Events ---

    def record_webhook_event(self, provider: str, event_id: str) -> bool:
        """Insert into the idempotency ledger.

        Returns False when (provider, event_id) was already recorded.
        """
        try:
            self.client.table("webhook_events").insert({
                "provider": provider,
                "event_id": event_id,
            }).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                return False
            raise
        return True

    # --- Transactions ---

    def upsert_transactions(self, transactions: list[dict]) -> list[dict]:
        """Insert transactions, silently skipping ids that already exist.

        Returns only the rows that were actually inserted.
        """
        if not transactions:
            return []
        result = (
            self.client.table("transactions")
            .upsert(transactions, on_conflict="id", ignore_duplicates=True)
            .execute()
        )
        return result.data or []
