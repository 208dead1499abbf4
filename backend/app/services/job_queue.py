"""Sync job queue: enqueue, atomic claim, and state transitions.

A job moves pending -> running -> completed | pending (retry / next page) |
failed. The pending -> running step only ever happens inside the database
(claim_next_sync_job), which locks the chosen row with SKIP LOCKED so two
workers can never claim the same job. Every transition out of running is
written with a guard on (status, claimed_at): a worker whose lease was
swept and re-claimed elsewhere cannot overwrite the new owner's state.
"""

from datetime import datetime, timedelta

from app.config import get_settings
from app.database import Database
from app.logging_config import get_logger
from app.utils.dates import to_iso, utcnow


logger = get_logger("queue")

WEBHOOK_PRIORITY = 0
INCREMENTAL_PRIORITY = 10
HISTORICAL_PRIORITY_BASE = 100

TERMINAL_STATUSES = frozenset({"completed", "failed"})


def new_job(
    *,
    user_id: str,
    connection_id: str,
    provider: str,
    job_type: str,
    chunk_start: datetime,
    chunk_end: datetime,
    priority: int,
    session_id: str | None = None,
) -> dict:
    """Build a pending sync_jobs row."""
    return {
        "user_id": user_id,
        "connection_id": connection_id,
        "provider": provider,
        "job_type": job_type,
        "status": "pending",
        "chunk_start": to_iso(chunk_start),
        "chunk_end": to_iso(chunk_end),
        "cursor": None,
        "priority": priority,
        "attempts": 0,
        "max_attempts": get_settings().max_attempts,
        "next_retry_at": None,
        "records_processed": 0,
        "session_id": session_id,
    }


def enqueue_jobs(db: Database, jobs: list[dict]) -> list[dict]:
    created = db.create_sync_jobs(jobs)
    logger.info(f"[QUEUE] Enqueued {len(created)} job(s)")
    return created


def claim_next_job(db: Database) -> dict | None:
    """Claim the next eligible pending job, or None when the queue is idle."""
    job = db.claim_next_sync_job()
    if job is None:
        logger.debug("[QUEUE] No eligible pending jobs")
        return None
    logger.info(
        f"[QUEUE] Claimed job {job['id']} ({job['provider']}/{job['job_type']}) "
        f"{job['chunk_start']} -> {job['chunk_end']} cursor={job.get('cursor')}"
    )
    return job


def compute_next_retry(attempts: int, now: datetime) -> datetime:
    """Exponential backoff: 2^attempts minutes from now."""
    return now + timedelta(minutes=2 ** attempts)


def update_claimed_job(db: Database, job: dict, data: dict) -> dict | None:
    """Write a transition for a job this worker claimed.

    Returns None (and logs) when the claim was lost.
    """
    updated = db.update_claimed_sync_job(
        job["id"],
        job["claimed_at"],
        {**data, "updated_at": to_iso(utcnow())},
    )
    if updated is None:
        logger.warning(
            f"[QUEUE] Lost claim on job {job['id']}; dropping update {sorted(data)}"
        )
    return updated


def fail_job(db: Database, job: dict, message: str) -> dict | None:
    """Mark a claimed job as permanently failed."""
    logger.error(f"[QUEUE] Job {job['id']} failed: {message}")
    return update_claimed_job(db, job, {
        "status": "failed",
        "error_message": message,
        "claimed_at": None,
        "completed_at": to_iso(utcnow()),
    })


def retry_or_fail(db: Database, job: dict, message: str, now: datetime | None = None) -> dict | None:
    """Requeue a claimed job with backoff, or fail it once attempts are used up."""
    now = now or utcnow()
    attempts = (job.get("attempts") or 0) + 1
    max_attempts = job.get("max_attempts") or get_settings().max_attempts

    if attempts >= max_attempts:
        logger.error(
            f"[QUEUE] Job {job['id']} exhausted {attempts}/{max_attempts} attempts: {message}"
        )
        return update_claimed_job(db, job, {
            "status": "failed",
            "attempts": attempts,
            "error_message": message,
            "claimed_at": None,
            "completed_at": to_iso(now),
        })

    next_retry_at = compute_next_retry(attempts, now)
    logger.warning(
        f"[QUEUE] Job {job['id']} attempt {attempts}/{max_attempts} failed, "
        f"retrying at {next_retry_at.isoformat()}: {message}"
    )
    return update_claimed_job(db, job, {
        "status": "pending",
        "attempts": attempts,
        "next_retry_at": to_iso(next_retry_at),
        "error_message": message,
        "claimed_at": None,
    })


def advance_job(db: Database, job: dict, next_cursor: str | None, written: int) -> dict | None:
    """Record a processed page: requeue for the next page, or complete the job."""
    records = (job.get("records_processed") or 0) + written
    if next_cursor:
        return update_claimed_job(db, job, {
            "status": "pending",
            "cursor": next_cursor,
            "records_processed": records,
            "next_retry_at": None,
            "claimed_at": None,
        })
    return update_claimed_job(db, job, {
        "status": "completed",
        "records_processed": records,
        "error_message": None,
        "claimed_at": None,
        "completed_at": to_iso(utcnow()),
    })


def sweep_stale_jobs(db: Database, now: datetime | None = None, timeout_minutes: int | None = None) -> list[dict]:
    """
    Requeue running jobs whose claim is older than the lease timeout.

    A lost lease counts as a failed attempt. The job keeps its cursor and
    records_processed; the page in flight is simply fetched again, which the
    idempotent writer absorbs.

    Returns:
        The jobs that were requeued or failed.
    """
    now = now or utcnow()
    timeout_minutes = timeout_minutes or get_settings().lease_timeout_minutes
    cutoff = now - timedelta(minutes=timeout_minutes)

    swept = []
    for job in db.get_stale_running_jobs(to_iso(cutoff)):
        message = f"Lease expired after {timeout_minutes} minute(s) without progress"
        updated = retry_or_fail(db, job, message, now=now)
        if updated is not None:
            swept.append(updated)

    if swept:
        logger.warning(f"[QUEUE] Requeued {len(swept)} stale running job(s)")
    return swept
