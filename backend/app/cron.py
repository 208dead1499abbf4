"""Scheduled cron jobs for background tasks.

The decorated functions are plain (blocking) functions; repeat_every runs
them in the threadpool so provider calls never block the event loop.
"""

from fastapi_utils.tasks import repeat_every

from app.config import get_settings
from app.database import get_db
from app.logging_config import get_logger
from app.services import job_queue
from app.services.chunk_processor import process_next_chunk
from app.services.historical_sync import enqueue_incremental_for_all


settings = get_settings()
logger = get_logger("cron")


def drain_queue(max_chunks: int) -> dict:
    """Process queued chunks until the queue is idle or max_chunks is reached."""
    db = get_db()
    counts = {"processed": 0, "errors": 0, "records": 0}

    for _ in range(max_chunks):
        result = process_next_chunk(db)
        if result["status"] == "idle":
            break
        if result["status"] == "processed":
            counts["processed"] += 1
            counts["records"] += result.get("records_inserted") or 0
        else:
            counts["errors"] += 1

    if counts["processed"] or counts["errors"]:
        logger.info(
            f"[CRON] Queue tick: {counts['processed']} chunk(s) processed, "
            f"{counts['errors']} error(s), {counts['records']} new record(s)"
        )
    return counts


@repeat_every(seconds=settings.queue_poll_seconds, logger=logger)
def process_sync_queue():
    """Work through queued sync chunks every few seconds."""
    drain_queue(settings.max_chunks_per_tick)


@repeat_every(seconds=settings.lease_sweep_seconds, logger=logger)
def sweep_expired_leases():
    """Requeue running jobs whose worker went away."""
    swept = job_queue.sweep_stale_jobs(get_db())
    if swept:
        logger.info(f"[CRON] Lease sweep requeued or failed {len(swept)} job(s)")


@repeat_every(seconds=settings.incremental_sync_seconds, logger=logger)
def enqueue_incremental_syncs():
    """Queue an incremental session for every connection."""
    logger.info("[CRON] Starting incremental sync tick...")
    queued = enqueue_incremental_for_all(get_db())
    logger.info(f"[CRON] Incremental tick queued {queued} session(s)")


CRON_TASKS = [process_sync_queue, sweep_expired_leases, enqueue_incremental_syncs]
