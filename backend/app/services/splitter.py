"""Bisect a job whose window the provider refused as too large."""

from datetime import timedelta

from app.database import Database
from app.logging_config import get_logger
from app.services import job_queue
from app.utils.dates import parse_timestamp, to_iso


logger = get_logger("splitter")

MIN_SPLIT_WINDOW = timedelta(days=1)


class WindowTooSmallToSplit(Exception):
    """The window is already at the one-day floor and still overflows."""


def split_job(db: Database, job: dict) -> tuple[dict | None, dict | None]:
    """
    Shrink a claimed job to the first half of its window and queue the second half.

    The original job keeps its id, session and priority, and goes back to
    pending with its cursor cleared. The sibling covers [midpoint, chunk_end)
    under the same session and priority.

    The sibling is inserted before the claimed job is shrunk, so at every
    point some job covers the whole original window.

    Raises:
        WindowTooSmallToSplit: If the window is already one day or shorter.
    """
    start = parse_timestamp(job["chunk_start"])
    end = parse_timestamp(job["chunk_end"])
    span = end - start

    if span <= MIN_SPLIT_WINDOW:
        raise WindowTooSmallToSplit(
            f"Result set too large even for a window of {span} "
            f"({job['chunk_start']} to {job['chunk_end']})"
        )

    midpoint = start + span / 2

    current = db.get_sync_job_by_id(job["id"])
    if current is None or current["status"] != "running" or current.get("claimed_at") != job["claimed_at"]:
        logger.warning(f"[SPLIT] Lost claim on job {job['id']}; not splitting")
        return None, None

    # Sibling first: if the insert fails the claimed job still covers the whole window.
    second_half = db.create_sync_job(job_queue.new_job(
        user_id=job["user_id"],
        connection_id=job["connection_id"],
        provider=job["provider"],
        job_type=job["job_type"],
        chunk_start=midpoint,
        chunk_end=end,
        priority=job["priority"],
        session_id=job.get("session_id"),
    ))

    first_half = job_queue.update_claimed_job(db, job, {
        "chunk_end": to_iso(midpoint),
        "status": "pending",
        "cursor": None,
        "next_retry_at": None,
        "claimed_at": None,
    })
    if first_half is None:
        # The new owner keeps the full window; the overlap is rewritten idempotently.
        return None, second_half

    logger.info(
        f"[SPLIT] Job {job['id']} split at {midpoint.isoformat()}: "
        f"kept {job['chunk_start']} -> {to_iso(midpoint)}, "
        f"new job {second_half['id']} {to_iso(midpoint)} -> {job['chunk_end']}"
    )
    return first_half, second_half
