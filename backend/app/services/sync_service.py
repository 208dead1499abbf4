"""Sync service - direct "sync now" path for a single connection."""

from collections.abc import Callable
from datetime import datetime, timedelta

from app.config import get_settings
from app.database import Database
from app.logging_config import get_logger
from app.services import job_queue
from app.services.connections import PROVIDERS, load_connection
from app.services.historical_sync import start_historical_sync
from app.services.providers import (
    ProviderAdapter,
    ProviderAuthError,
    ProviderError,
    ResultSetTooLarge,
    get_adapter,
)
from app.services.writer import write_transactions
from app.utils.dates import parse_timestamp, to_iso, utcnow


logger = get_logger("sync")


def sync_connection_now(
    db: Database,
    connection_id: str,
    provider: str,
    full_sync: bool = False,
    now: datetime | None = None,
    adapter_factory: Callable[[str], ProviderAdapter] = get_adapter,
) -> dict:
    """
    Sync one connection right away, for the dashboard's "sync now" button.

    1. full_sync hands off to a queued historical backfill.
    2. Otherwise creates a sync_job record, already running and claimed by us.
    3. Pages through [last_synced_at, now) with the provider adapter,
       capped at sync_now_max_days back.
    4. Writes each page through the idempotent writer.
    5. Completes the job and moves last_synced_at to now.

    A window the provider refuses as too large, or a transient provider
    fault, hands the job to the queue instead, where the splitter and the
    retry backoff take over. Credential faults fail the job.

    Returns:
        {"success", "mode": "direct" | "queued", "job_id"?, "records_inserted"?, "error"?}
    """
    if provider not in PROVIDERS:
        return {"success": False, "error": f"Unsupported provider: {provider}"}

    if full_sync:
        result = start_historical_sync(db, connection_id, provider, now=now)
        return {**result, "mode": "queued"}

    job = None
    total_written = 0
    try:
        connection = load_connection(db, provider, connection_id)
        if connection is None:
            return {"success": False, "error": "Connection not found"}

        settings = get_settings()
        now = now or utcnow()
        floor = now - timedelta(days=settings.sync_now_max_days)
        window_start = max(parse_timestamp(connection.last_synced_at) or floor, floor)
        if window_start >= now:
            return {"success": True, "mode": "direct", "records_inserted": 0}

        # Created already claimed so no queue worker picks it up mid-sync.
        job = db.create_sync_job({
            **job_queue.new_job(
                user_id=connection.user_id,
                connection_id=connection.id,
                provider=provider,
                job_type="incremental",
                chunk_start=window_start,
                chunk_end=now,
                priority=job_queue.INCREMENTAL_PRIORITY,
            ),
            "status": "running",
            "claimed_at": to_iso(utcnow()),
        })
        logger.info(
            f"[SYNC] Direct sync of {provider}/{connection.id} "
            f"{window_start.isoformat()} -> {now.isoformat()} (job {job['id']})"
        )

        adapter = adapter_factory(provider)
        cursor = None
        while True:
            try:
                page = adapter.fetch_page(connection, window_start, now, cursor)
            except ResultSetTooLarge:
                job_queue.update_claimed_job(db, job, {
                    "status": "pending",
                    "cursor": None,
                    "claimed_at": None,
                })
                logger.info(f"[SYNC] Window too large for direct sync, queued job {job['id']} for splitting")
                return {"success": True, "mode": "queued", "job_id": job["id"], "records_inserted": total_written}
            except ProviderAuthError as e:
                job_queue.fail_job(db, job, str(e))
                return {"success": False, "mode": "direct", "job_id": job["id"], "error": str(e)}
            except ProviderError as e:
                updated = job_queue.retry_or_fail(db, job, str(e))
                queued = updated is not None and updated["status"] == "pending"
                return {
                    "success": False,
                    "mode": "queued" if queued else "direct",
                    "job_id": job["id"],
                    "records_inserted": total_written,
                    "error": str(e),
                }

            total_written += write_transactions(db, page.transactions)
            cursor = page.next_cursor
            if cursor is None:
                break
            # Persist the cursor after each page so a handed-off job resumes here.
            job = {**job, "cursor": cursor, "records_processed": total_written}
            job_queue.update_claimed_job(db, job, {"cursor": cursor, "records_processed": total_written})

        job_queue.update_claimed_job(db, job, {
            "status": "completed",
            "records_processed": total_written,
            "claimed_at": None,
            "completed_at": to_iso(utcnow()),
        })
        db.update_connection(provider, connection.id, {"last_synced_at": to_iso(now)})

    except Exception as e:
        logger.exception(f"[SYNC] Direct sync of {provider}/{connection_id} failed")
        if job is not None:
            try:
                job_queue.fail_job(db, job, str(e))
            except Exception:
                logger.exception(f"[SYNC] Could not mark job {job['id']} failed; leaving it to the lease sweep")
        return {"success": False, "error": str(e), "job_id": job["id"] if job else None}

    logger.info(f"[SYNC] Direct sync of {provider}/{connection_id} wrote {total_written} new transaction(s)")
    return {"success": True, "mode": "direct", "job_id": job["id"], "records_inserted": total_written}
