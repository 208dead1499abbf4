"""Seed sync sessions: historical backfills and incremental ticks."""

import calendar
from datetime import datetime, timedelta

from app.config import get_settings
from app.database import Database
from app.logging_config import get_logger
from app.services import job_queue
from app.services.connections import PROVIDERS, list_provider_connections, load_connection
from app.services.session_service import create_session
from app.utils.dates import parse_timestamp, utcnow


logger = get_logger("historical")


def add_months(value: datetime, months: int) -> datetime:
    """Shift a datetime by whole calendar months, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def build_chunks(start: datetime, end: datetime, months: int = 1) -> list[tuple[datetime, datetime]]:
    """Split [start, end) into consecutive windows of `months` calendar months.

    The last window is cut short at `end`.
    """
    chunks = []
    step = 1
    chunk_start = start
    while chunk_start < end:
        # Step from the original start so month-end days don't drift (Jan 31 -> Feb 28 -> Mar 31).
        chunk_end = min(add_months(start, months * step), end)
        chunks.append((chunk_start, chunk_end))
        chunk_start = chunk_end
        step += 1
    return chunks


def enqueue_session(
    db: Database,
    *,
    user_id: str,
    connection_id: str,
    provider: str,
    sync_type: str,
    chunks: list[tuple[datetime, datetime]],
) -> dict:
    """Create a session and one pending job per chunk under it."""
    session = create_session(
        db,
        user_id=user_id,
        connection_id=connection_id,
        provider=provider,
        sync_type=sync_type,
        total_chunks=len(chunks),
    )

    if sync_type == "historical":
        priorities = [job_queue.HISTORICAL_PRIORITY_BASE + index for index in range(len(chunks))]
    else:
        priorities = [job_queue.INCREMENTAL_PRIORITY] * len(chunks)

    jobs = [
        job_queue.new_job(
            user_id=user_id,
            connection_id=connection_id,
            provider=provider,
            job_type=sync_type,
            chunk_start=chunk_start,
            chunk_end=chunk_end,
            priority=priority,
            session_id=session["id"],
        )
        for (chunk_start, chunk_end), priority in zip(chunks, priorities)
    ]
    job_queue.enqueue_jobs(db, jobs)
    return session


def start_historical_sync(
    db: Database,
    connection_id: str,
    provider: str,
    now: datetime | None = None,
    lookback_years: int | None = None,
) -> dict:
    """
    Queue a full historical backfill for one connection.

    The lookback window (3 years for PayPal, 5 for Stripe and Wise by
    default) is cut into calendar-month chunks, all queued under one
    session. Processing happens later, one chunk per process_next_chunk call.

    Returns:
        {"success": True, "session_id", "chunks_queued", "provider"} or
        {"success": False, "error"}.
    """
    if provider not in PROVIDERS:
        return {"success": False, "error": f"Unsupported provider: {provider}"}

    try:
        connection = load_connection(db, provider, connection_id)
        if connection is None:
            return {"success": False, "error": "Connection not found"}

        settings = get_settings()
        now = now or utcnow()
        years = lookback_years or settings.lookback_years(provider)
        start = add_months(now, -12 * years)
        chunks = build_chunks(start, now, settings.sync_chunk_months)

        session = enqueue_session(
            db,
            user_id=connection.user_id,
            connection_id=connection.id,
            provider=provider,
            sync_type="historical",
            chunks=chunks,
        )
    except Exception as e:
        logger.exception(f"[HISTORICAL] Failed to queue backfill for {provider}/{connection_id}")
        return {"success": False, "error": str(e)}

    logger.info(
        f"[HISTORICAL] Queued {len(chunks)} chunk(s) for {provider}/{connection_id} "
        f"from {start.date()} under session {session['id']}"
    )
    return {
        "success": True,
        "session_id": session["id"],
        "chunks_queued": len(chunks),
        "provider": provider,
    }


def enqueue_incremental_sync(db: Database, provider: str, connection_id: str, now: datetime | None = None) -> dict | None:
    """
    Queue an incremental session from the connection's last sync up to now.

    The start never reaches back more than sync_now_max_days. Skips
    connections that already have an open incremental or webhook job.

    Returns:
        The session row, or None when nothing was queued.
    """
    connection = load_connection(db, provider, connection_id)
    if connection is None:
        logger.warning(f"[INCREMENTAL] Connection {provider}/{connection_id} not found")
        return None

    if db.get_open_jobs_for_connection(connection.id, ["incremental", "webhook"]):
        logger.debug(f"[INCREMENTAL] {provider}/{connection.id} already has open work, skipping")
        return None

    settings = get_settings()
    now = now or utcnow()
    start = parse_timestamp(connection.last_synced_at) or now - timedelta(days=settings.incremental_default_days)
    # Older gaps belong to a historical backfill, not to the tick.
    start = max(start, now - timedelta(days=settings.sync_now_max_days))
    if start >= now:
        return None

    chunks = build_chunks(start, now, settings.sync_chunk_months)
    return enqueue_session(
        db,
        user_id=connection.user_id,
        connection_id=connection.id,
        provider=provider,
        sync_type="incremental",
        chunks=chunks,
    )


def enqueue_incremental_for_all(db: Database, now: datetime | None = None) -> int:
    """Queue an incremental tick for every connection of every provider."""
    queued = 0
    for provider in PROVIDERS:
        for connection in list_provider_connections(db, provider):
            try:
                if enqueue_incremental_sync(db, provider, connection.id, now=now):
                    queued += 1
            except Exception:
                # Individual connection failures don't stop the rest
                logger.exception(f"[INCREMENTAL] Failed to queue {provider}/{connection.id}")
    logger.info(f"[INCREMENTAL] Queued {queued} incremental session(s)")
    return queued
