"""API routers."""

from app.routers.sync import router as sync_router
from app.routers.webhooks import router as webhooks_router

__all__ = [
    "sync_router",
    "webhooks_router",
]
