"""Webhook acknowledgement schema."""

from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    """Always returned with HTTP 200 so providers stop retrying."""

    received: bool = True
    event_id: str | None = None
    queued: bool = False
    job_id: str | None = None
    message: str | None = None
    fallback_match: bool = False
    error: str | None = None
