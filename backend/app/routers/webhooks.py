"""Webhook router - inbound provider events."""

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from app.database import Database
from app.dependencies import get_admin_database
from app.schemas.webhook import WebhookAckResponse
from app.services import webhook_service


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{provider}", response_model=WebhookAckResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    db: Database = Depends(get_admin_database),
):
    """
    Accept a provider event and queue a short catch-up sync for it.

    Always answers 200, even for events that are rejected, duplicated or
    unroutable: providers keep retrying anything else. The signature is
    checked against the raw body inside the service.
    """
    raw_body = await request.body()
    result = await run_in_threadpool(
        webhook_service.ingest_webhook,
        db,
        provider,
        raw_body,
        dict(request.headers),
    )
    return WebhookAckResponse(**result)
