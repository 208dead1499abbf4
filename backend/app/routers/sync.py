"""Sync router - queue, run and monitor transaction syncs."""

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool

from app.database import Database
from app.dependencies import get_admin_database, get_current_user, require_scheduler
from app.schemas.connection import Provider
from app.schemas.sync import (
    HistoricalSyncRequest,
    HistoricalSyncResponse,
    ProcessChunkResponse,
    SyncJobResponse,
    SyncNowRequest,
    SyncNowResponse,
    SyncSessionListResponse,
    SyncSessionResponse,
)
from app.services import chunk_processor, historical_sync, sync_service


router = APIRouter(prefix="/sync", tags=["Sync"])


def _get_owned_connection(db: Database, provider: Provider, connection_id: str, user: dict) -> dict:
    connection = db.get_connection(provider, connection_id)
    if connection is None or connection["user_id"] != user["id"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found",
        )
    return connection


def _session_response(session: dict, jobs: list[dict]) -> SyncSessionResponse:
    total = session.get("total_chunks") or 0
    completed = session.get("completed_chunks") or 0
    return SyncSessionResponse(
        id=session["id"],
        connection_id=session["connection_id"],
        provider=session["provider"],
        sync_type=session["sync_type"],
        status=session["status"],
        total_chunks=total,
        completed_chunks=completed,
        failed_chunks=session.get("failed_chunks") or 0,
        total_records=session.get("total_records") or 0,
        progress=min(completed / total, 1.0) if total else 0.0,
        error_message=session.get("error_message"),
        created_at=session.get("created_at"),
        completed_at=session.get("completed_at"),
        jobs=[
            SyncJobResponse(
                id=job["id"],
                job_type=job["job_type"],
                status=job["status"],
                chunk_start=job["chunk_start"],
                chunk_end=job["chunk_end"],
                priority=job["priority"],
                attempts=job.get("attempts") or 0,
                max_attempts=job["max_attempts"],
                next_retry_at=job.get("next_retry_at"),
                records_processed=job.get("records_processed") or 0,
                error_message=job.get("error_message"),
                created_at=job.get("created_at"),
            )
            for job in jobs
        ],
    )


@router.post("/historical", response_model=HistoricalSyncResponse)
async def start_historical_sync(
    request: HistoricalSyncRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_admin_database),
):
    """
    Queue a full historical backfill for one of the user's connections.

    The lookback window is cut into monthly chunks; the scheduler works
    through them via POST /sync/process.
    """
    _get_owned_connection(db, request.provider, request.connection_id, user)

    result = historical_sync.start_historical_sync(db, request.connection_id, request.provider)
    if not result["success"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result["error"],
        )

    return HistoricalSyncResponse(
        session_id=result["session_id"],
        chunks_queued=result["chunks_queued"],
        provider=request.provider,
        message=f"Queued {result['chunks_queued']} chunk(s) for historical sync",
    )


@router.post(
    "/process",
    response_model=ProcessChunkResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_scheduler)],
)
async def process_next_chunk(db: Database = Depends(get_admin_database)):
    """
    Claim and process one queued chunk.

    Meant to be called repeatedly by an external scheduler until it
    reports ``idle``. Provider calls block, so the work runs in a thread.
    """
    result = await run_in_threadpool(chunk_processor.process_next_chunk, db)
    return ProcessChunkResponse(**result)


@router.post("/now", response_model=SyncNowResponse)
async def sync_now(
    request: SyncNowRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_admin_database),
):
    """Sync one connection immediately, or queue a full backfill with full_sync."""
    _get_owned_connection(db, request.provider, request.connection_id, user)

    result = await run_in_threadpool(
        sync_service.sync_connection_now,
        db,
        request.connection_id,
        request.provider,
        request.full_sync,
    )
    return SyncNowResponse(
        success=result["success"],
        mode=result.get("mode", "direct"),
        job_id=result.get("job_id"),
        session_id=result.get("session_id"),
        records_inserted=result.get("records_inserted", 0),
        error=result.get("error"),
    )


@router.get("/sessions", response_model=SyncSessionListResponse)
async def list_sync_sessions(
    connection_id: str,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_admin_database),
):
    """List recent sync sessions for one of the user's connections."""
    sessions = db.get_sync_sessions_for_connection(connection_id)
    return SyncSessionListResponse(
        sessions=[
            _session_response(session, [])
            for session in sessions
            if session["user_id"] == user["id"]
        ]
    )


@router.get("/sessions/{session_id}", response_model=SyncSessionResponse)
async def get_sync_session(
    session_id: str,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_admin_database),
):
    """Get a session's progress along with the state of each of its jobs."""
    session = db.get_sync_session_by_id(session_id)
    if session is None or session["user_id"] != user["id"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync session not found",
        )

    jobs = db.get_session_jobs(session_id)
    return _session_response(session, jobs)
