"""Chunk processor - claims one sync job and does one page of work."""

from collections.abc import Callable
from datetime import datetime

from app.database import Database
from app.logging_config import get_logger
from app.schemas.connection import Connection
from app.services import job_queue
from app.services.connections import load_connection
from app.services.providers import (
    ProviderAdapter,
    ProviderAuthError,
    ProviderError,
    ResultSetTooLarge,
    get_adapter,
)
from app.services.session_service import update_session_progress
from app.services.splitter import WindowTooSmallToSplit, split_job
from app.services.writer import write_transactions
from app.utils.dates import parse_timestamp, to_iso


logger = get_logger("chunks")


def process_next_chunk(
    db: Database,
    adapter_factory: Callable[[str], ProviderAdapter] = get_adapter,
) -> dict:
    """
    Claim the next eligible job and process exactly one provider page.

    1. Claims a pending job (idle when there is none).
    2. Loads the job's connection with decrypted credentials.
    3. Fetches one page from the provider adapter.
    4. Writes the page through the idempotent writer.
    5. Requeues the job for its next page, or completes it.
    6. Recomputes the owning session's progress.

    Provider faults are handled here: a window-too-large refusal splits the
    job, credential faults fail it immediately, anything else is retried
    with exponential backoff until max_attempts.

    Never raises; every outcome comes back as a dict with a ``status`` of
    ``idle``, ``processed`` or ``error``.
    """
    job = None
    try:
        job = job_queue.claim_next_job(db)
        if job is None:
            return {"status": "idle", "message": "No pending jobs"}
        return _process_job(db, job, adapter_factory)
    except Exception as e:
        logger.exception(f"[CHUNK] Unexpected error processing job {job['id'] if job else '-'}")
        result = {"status": "error", "error": str(e)}
        if job is not None:
            result["job_id"] = job["id"]
            _release_after_crash(db, job, str(e))
        return result


def _process_job(db: Database, job: dict, adapter_factory: Callable[[str], ProviderAdapter]) -> dict:
    provider = job["provider"]
    connection = load_connection(db, provider, job["connection_id"])
    if connection is None:
        job_queue.fail_job(db, job, "Connection not found")
        _refresh_session(db, job)
        return {"status": "error", "job_id": job["id"], "error": "Connection not found"}

    adapter = adapter_factory(provider)
    window_start = parse_timestamp(job["chunk_start"])
    window_end = parse_timestamp(job["chunk_end"])

    try:
        page = adapter.fetch_page(connection, window_start, window_end, job.get("cursor"))
    except ResultSetTooLarge:
        return _split(db, job)
    except ProviderAuthError as e:
        job_queue.fail_job(db, job, str(e))
        _refresh_session(db, job)
        return {"status": "error", "job_id": job["id"], "error": str(e), "retrying": False}
    except ProviderError as e:
        updated = job_queue.retry_or_fail(db, job, str(e))
        _refresh_session(db, job)
        retrying = updated is not None and updated["status"] == "pending"
        result = {"status": "error", "job_id": job["id"], "error": str(e), "retrying": retrying}
        if retrying:
            result["next_retry_at"] = updated["next_retry_at"]
        return result

    written = write_transactions(db, page.transactions)
    job_queue.advance_job(db, job, page.next_cursor, written)

    session = _refresh_session(db, job)

    if page.next_cursor is None:
        if job["job_type"] != "historical":
            _mark_synced(db, connection, window_end)
        elif session is not None and session["status"] == "completed" and not session.get("failed_chunks"):
            # A backfill only counts as synced once every chunk is done.
            jobs = db.get_session_jobs(session["id"])
            _mark_synced(db, connection, max(parse_timestamp(j["chunk_end"]) for j in jobs))

    logger.info(
        f"[CHUNK] Job {job['id']} ({provider}) page done: "
        f"{len(page.transactions)} fetched, {written} new, has_more={page.next_cursor is not None}"
    )
    return {
        "status": "processed",
        "job_id": job["id"],
        "provider": provider,
        "records_inserted": written,
        "has_more": page.next_cursor is not None,
        "next_cursor": page.next_cursor,
    }


def _split(db: Database, job: dict) -> dict:
    try:
        first_half, second_half = split_job(db, job)
    except WindowTooSmallToSplit as e:
        job_queue.fail_job(db, job, str(e))
        _refresh_session(db, job)
        return {"status": "error", "job_id": job["id"], "error": str(e), "retrying": False}

    _refresh_session(db, job)
    return {
        "status": "processed",
        "job_id": job["id"],
        "provider": job["provider"],
        "records_inserted": 0,
        "has_more": True,
        "split": True,
        "new_job_id": second_half["id"] if second_half else None,
    }


def _mark_synced(db: Database, connection: Connection, window_end: datetime) -> None:
    # Only ever move last_synced_at forward; old backfill chunks finish late.
    last_synced = parse_timestamp(connection.last_synced_at)
    if last_synced is None or window_end > last_synced:
        db.update_connection(connection.provider, connection.id, {"last_synced_at": to_iso(window_end)})


def _refresh_session(db: Database, job: dict) -> dict | None:
    if job.get("session_id"):
        return update_session_progress(db, job["session_id"])
    return None


def _release_after_crash(db: Database, job: dict, message: str) -> None:
    """Best effort: hand a job that blew up mid-processing back to the queue.

    If this fails too, the lease sweep picks the job up later.
    """
    try:
        job_queue.retry_or_fail(db, job, message)
        _refresh_session(db, job)
    except Exception:
        logger.exception(f"[CHUNK] Could not release job {job['id']}; leaving it to the lease sweep")
