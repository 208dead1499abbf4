"""Sync session bookkeeping.

A session groups the jobs of one historical backfill or one incremental
tick. Its counters are always recomputed from the live job rows, so the
update is idempotent and any number of workers may call it redundantly.
"""

from app.config import get_settings
from app.database import Database
from app.logging_config import get_logger
from app.services.job_queue import TERMINAL_STATUSES
from app.utils.dates import to_iso, utcnow


logger = get_logger("sessions")


def create_session(
    db: Database,
    *,
    user_id: str,
    connection_id: str,
    provider: str,
    sync_type: str,
    total_chunks: int,
) -> dict:
    session = db.create_sync_session({
        "user_id": user_id,
        "connection_id": connection_id,
        "provider": provider,
        "sync_type": sync_type,
        "status": "running",
        "total_chunks": total_chunks,
        "completed_chunks": 0,
        "failed_chunks": 0,
        "total_records": 0,
    })
    logger.info(
        f"[SESSION] Created {sync_type} session {session['id']} for "
        f"{provider}/{connection_id} with {total_chunks} chunk(s)"
    )
    return session


def summarize_jobs(jobs: list[dict], failure_policy: str) -> dict:
    """Compute session counters and status from its job rows."""
    total = len(jobs)
    terminal = [job for job in jobs if job["status"] in TERMINAL_STATUSES]
    failed = [job for job in terminal if job["status"] == "failed"]
    records = sum(job.get("records_processed") or 0 for job in jobs)

    summary = {
        "total_chunks": total,
        "completed_chunks": len(terminal),
        "failed_chunks": len(failed),
        "total_records": records,
        "status": "running",
        "error_message": None,
    }

    if total and len(terminal) == total:
        if failed and failure_policy == "fail":
            summary["status"] = "failed"
            summary["error_message"] = f"{len(failed)} of {total} chunk(s) failed"
        else:
            summary["status"] = "completed"
            if failed:
                summary["error_message"] = (
                    f"Completed with errors: {len(failed)} of {total} chunk(s) failed"
                )
    return summary


def update_session_progress(db: Database, session_id: str) -> dict | None:
    """
    Recompute a session's progress from its jobs and persist it.

    total_chunks is the live job count (the splitter adds rows),
    completed_chunks counts jobs in a terminal state, and total_records
    sums records_processed. The session turns terminal once every job is.

    Returns:
        The updated session row, or None if the session does not exist.
    """
    session = db.get_sync_session_by_id(session_id)
    if session is None:
        logger.warning(f"[SESSION] Session {session_id} not found")
        return None

    jobs = db.get_session_jobs(session_id)
    summary = summarize_jobs(jobs, get_settings().session_failure_policy)

    if summary["status"] != "running" and session.get("status") == "running":
        summary["completed_at"] = to_iso(utcnow())
        logger.info(
            f"[SESSION] Session {session_id} {summary['status']}: "
            f"{summary['completed_chunks']}/{summary['total_chunks']} chunk(s), "
            f"{summary['total_records']} record(s), {summary['failed_chunks']} failed"
        )

    summary["updated_at"] = to_iso(utcnow())
    return db.update_sync_session(session_id, summary)
