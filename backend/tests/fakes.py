"""In-memory stand-in for app.database.Database.

Mirrors the Database method surface and the storage semantics the sync core
relies on: the claim is atomic (one lock around select-and-update), the
transaction upsert ignores existing ids and returns only inserted rows, and
the webhook ledger rejects a repeated (provider, event_id).
"""

import copy
import itertools
import threading
import uuid
from datetime import datetime, timezone

from app.utils.dates import parse_timestamp, to_iso, utcnow


USER_ID = "11111111-1111-1111-1111-111111111111"
FIXED_NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


class InMemoryDatabase:
    """Thread-safe dict-backed Database double."""

    def __init__(self, clock=utcnow):
        self.clock = clock
        self.lock = threading.Lock()
        self.users: dict[str, dict] = {}
        self.connections: dict[str, dict[str, dict]] = {"stripe": {}, "paypal": {}, "wise": {}}
        self.sync_jobs: dict[str, dict] = {}
        self.sync_sessions: dict[str, dict] = {}
        self.webhook_events: set[tuple[str, str]] = set()
        self.transactions: dict[str, dict] = {}
        self.upsert_calls = 0
        self._seq = itertools.count()

    def _now(self) -> str:
        return to_iso(self.clock())

    def _stamp(self, row: dict) -> dict:
        row = copy.deepcopy(row)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", self._now())
        row["_seq"] = next(self._seq)
        return row

    @staticmethod
    def _public(row: dict | None) -> dict | None:
        if row is None:
            return None
        return {key: copy.deepcopy(value) for key, value in row.items() if key != "_seq"}

    # --- Users ---

    def get_user_by_id(self, user_id: str) -> dict | None:
        return self._public(self.users.get(user_id))

    def create_user(self, user_data: dict) -> dict | None:
        row = self._stamp(user_data)
        self.users[row["id"]] = row
        return self._public(row)

    # --- Connections ---

    def add_connection(self, provider: str, row: dict) -> dict:
        """Test helper: store a connection row as-is (secrets already encrypted)."""
        row = self._stamp(row)
        self.connections[provider][row["id"]] = row
        return self._public(row)

    def get_connection(self, provider: str, connection_id: str) -> dict | None:
        return self._public(self.connections[provider].get(connection_id))

    def list_connections(self, provider: str) -> list[dict]:
        rows = sorted(self.connections[provider].values(), key=lambda r: r["_seq"])
        return [self._public(row) for row in rows]

    def find_connections(self, provider: str, column: str, value: str) -> list[dict]:
        return [
            row
            for row in self.list_connections(provider)
            if row.get(column) is not None and str(row[column]) == value
        ]

    def update_connection(self, provider: str, connection_id: str, data: dict) -> dict | None:
        with self.lock:
            row = self.connections[provider].get(connection_id)
            if row is None:
                return None
            row.update(copy.deepcopy(data))
            return self._public(row)

    # --- Sync Jobs ---

    def create_sync_job(self, job_data: dict) -> dict:
        with self.lock:
            row = self._stamp(job_data)
            self.sync_jobs[row["id"]] = row
            return self._public(row)

    def create_sync_jobs(self, jobs: list[dict]) -> list[dict]:
        return [self.create_sync_job(job) for job in jobs]

    def claim_next_sync_job(self) -> dict | None:
        with self.lock:
            now = self.clock()
            eligible = [
                job
                for job in self.sync_jobs.values()
                if job["status"] == "pending"
                and (job.get("next_retry_at") is None or parse_timestamp(job["next_retry_at"]) <= now)
            ]
            if not eligible:
                return None
            job = min(eligible, key=lambda j: (j["priority"], j["created_at"], j["_seq"]))
            job["status"] = "running"
            job["claimed_at"] = f"{to_iso(now)}#{next(self._seq)}"
            job["updated_at"] = to_iso(now)
            return self._public(job)

    def get_sync_job_by_id(self, job_id: str) -> dict | None:
        return self._public(self.sync_jobs.get(job_id))

    def update_sync_job(self, job_id: str, data: dict) -> dict | None:
        with self.lock:
            row = self.sync_jobs.get(job_id)
            if row is None:
                return None
            row.update(copy.deepcopy(data))
            return self._public(row)

    def update_claimed_sync_job(self, job_id: str, claimed_at: str, data: dict) -> dict | None:
        with self.lock:
            row = self.sync_jobs.get(job_id)
            if row is None or row["status"] != "running" or row.get("claimed_at") != claimed_at:
                return None
            row.update(copy.deepcopy(data))
            return self._public(row)

    def get_session_jobs(self, session_id: str) -> list[dict]:
        jobs = [job for job in self.sync_jobs.values() if job.get("session_id") == session_id]
        jobs.sort(key=lambda j: parse_timestamp(j["chunk_start"]))
        return [self._public(job) for job in jobs]

    def get_open_jobs_for_connection(self, connection_id: str, job_types: list[str]) -> list[dict]:
        return [
            self._public(job)
            for job in self.sync_jobs.values()
            if job["connection_id"] == connection_id
            and job["job_type"] in job_types
            and job["status"] in ("pending", "running")
        ]

    def get_stale_running_jobs(self, claimed_before: str) -> list[dict]:
        cutoff = parse_timestamp(claimed_before)
        return [
            self._public(job)
            for job in self.sync_jobs.values()
            if job["status"] == "running" and _claim_time(job["claimed_at"]) < cutoff
        ]

    # --- Sync Sessions ---

    def create_sync_session(self, session_data: dict) -> dict:
        with self.lock:
            row = self._stamp(session_data)
            self.sync_sessions[row["id"]] = row
            return self._public(row)

    def get_sync_session_by_id(self, session_id: str) -> dict | None:
        return self._public(self.sync_sessions.get(session_id))

    def get_sync_sessions_for_connection(self, connection_id: str, limit: int = 20) -> list[dict]:
        sessions = [s for s in self.sync_sessions.values() if s["connection_id"] == connection_id]
        sessions.sort(key=lambda s: s["_seq"], reverse=True)
        return [self._public(s) for s in sessions[:limit]]

    def update_sync_session(self, session_id: str, data: dict) -> dict | None:
        with self.lock:
            row = self.sync_sessions.get(session_id)
            if row is None:
                return None
            row.update(copy.deepcopy(data))
            return self._public(row)

    # --- Webhook Events ---

    def record_webhook_event(self, provider: str, event_id: str) -> bool:
        with self.lock:
            key = (provider, event_id)
            if key in self.webhook_events:
                return False
            self.webhook_events.add(key)
            return True

    # --- Transactions ---

    def upsert_transactions(self, transactions: list[dict]) -> list[dict]:
        with self.lock:
            self.upsert_calls += 1
            inserted = []
            for row in transactions:
                if row["id"] in self.transactions:
                    continue
                self.transactions[row["id"]] = copy.deepcopy(row)
                inserted.append(copy.deepcopy(row))
            return inserted


def _claim_time(claimed_at: str) -> datetime:
    # Claims carry a "#<n>" suffix so two claims in the same microsecond differ.
    return parse_timestamp(claimed_at.split("#", 1)[0])
