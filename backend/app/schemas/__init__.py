"""Pydantic schemas for request/response validation."""

from app.schemas.common import ErrorResponse
from app.schemas.connection import (
    Connection,
    NormalizedTransaction,
)
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
from app.schemas.webhook import WebhookAckResponse

__all__ = [
    # Common
    "ErrorResponse",
    # Connections
    "Connection",
    "NormalizedTransaction",
    # Sync
    "HistoricalSyncRequest",
    "HistoricalSyncResponse",
    "ProcessChunkResponse",
    "SyncJobResponse",
    "SyncNowRequest",
    "SyncNowResponse",
    "SyncSessionListResponse",
    "SyncSessionResponse",
    # Webhooks
    "WebhookAckResponse",
]
