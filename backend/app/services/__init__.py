"""Business logic services."""

from app.services import chunk_processor
from app.services import historical_sync
from app.services import sync_service
from app.services import webhook_service

__all__ = [
    "chunk_processor",
    "historical_sync",
    "sync_service",
    "webhook_service",
]
