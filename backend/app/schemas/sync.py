"""Sync trigger, job and session schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.schemas.connection import Provider


class HistoricalSyncRequest(BaseModel):
    """Request to queue a full historical backfill."""

    connection_id: str
    provider: Provider


class HistoricalSyncResponse(BaseModel):
    """Response after queuing a backfill."""

    session_id: str
    chunks_queued: int
    provider: Provider
    message: str


class SyncNowRequest(BaseModel):
    """Request to sync one connection right away."""

    connection_id: str
    provider: Provider
    full_sync: bool = False


class SyncNowResponse(BaseModel):
    """Result of a direct sync, or of handing it to the queue."""

    success: bool
    mode: Literal["direct", "queued"]
    job_id: str | None = None
    session_id: str | None = None
    records_inserted: int = 0
    error: str | None = None


class ProcessChunkResponse(BaseModel):
    """Outcome of one process_next_chunk call."""

    status: Literal["idle", "processed", "error"]
    job_id: str | None = None
    provider: str | None = None
    records_inserted: int | None = None
    has_more: bool | None = None
    next_cursor: str | None = None
    split: bool = False
    new_job_id: str | None = None
    retrying: bool | None = None
    next_retry_at: datetime | None = None
    message: str | None = None
    error: str | None = None


class SyncJobResponse(BaseModel):
    """Single sync job state."""

    id: str
    job_type: str
    status: str
    chunk_start: datetime
    chunk_end: datetime
    priority: int
    attempts: int = 0
    max_attempts: int
    next_retry_at: datetime | None = None
    records_processed: int = 0
    error_message: str | None = None
    created_at: datetime | None = None


class SyncSessionResponse(BaseModel):
    """Session progress for the dashboard."""

    id: str
    connection_id: str
    provider: str
    sync_type: str
    status: str
    total_chunks: int
    completed_chunks: int
    failed_chunks: int = 0
    total_records: int
    progress: float = Field(..., ge=0, le=1)
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    jobs: list[SyncJobResponse] = []


class SyncSessionListResponse(BaseModel):
    """List of sync sessions."""

    sessions: list[SyncSessionResponse]
