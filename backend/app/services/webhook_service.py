"""Webhook ingestion gateway.

Providers retry aggressively on anything but a 2xx, so every outcome here,
including rejection, is reported as a 200-style acknowledgement dict. An
accepted event never writes transactions itself; it queues one small,
highest-priority job covering the last few hours for the owning connection.

Per event: extract the provider event id -> resolve the owning connection
-> verify the signature (where a secret is configured) -> record
(provider, event_id) in the idempotency ledger -> enqueue the webhook job.
A rejected delivery never reaches the ledger, so the genuine retry of the
same event is still accepted.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta

from app.config import get_settings
from app.database import Database
from app.logging_config import get_logger
from app.schemas.connection import Connection
from app.services import job_queue
from app.services.connections import PROVIDERS, connection_from_row
from app.utils.dates import utcnow


logger = get_logger("webhooks")


class SignatureError(Exception):
    """The webhook signature is missing or does not match."""


def _ack(queued: bool = False, event_id: str | None = None, **extra) -> dict:
    return {"received": True, "event_id": event_id, "queued": queued, **extra}


def _lower_headers(headers) -> dict:
    return {key.lower(): value for key, value in dict(headers or {}).items()}


# --- Event ids ---

def extract_event_id(provider: str, event: dict, headers: dict) -> str | None:
    """Pull the provider's stable event id out of a payload."""
    if provider == "stripe":
        return event.get("id")
    if provider == "paypal":
        return event.get("id") or event.get("event_id")
    if provider == "wise":
        delivery_id = headers.get("x-delivery-id")
        if delivery_id:
            return delivery_id
        data = event.get("data") or {}
        resource_id = (data.get("resource") or {}).get("id")
        if resource_id is None:
            return None
        parts = [event.get("event_type") or "event", str(resource_id)]
        if data.get("current_state"):
            parts.append(str(data["current_state"]))
        return ":".join(parts)
    return None


# --- Signatures ---

def verify_stripe_signature(secret: str, raw_body: bytes, header: str | None, tolerance: int, now: float | None = None) -> None:
    """Check a ``Stripe-Signature: t=...,v1=...`` header.

    Raises:
        SignatureError: If the header is missing, stale, or matches no v1 signature.
    """
    if not header:
        raise SignatureError("Missing Stripe-Signature header")

    timestamp = None
    signatures = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        raise SignatureError("Malformed Stripe-Signature header")

    now = now if now is not None else time.time()
    if abs(now - int(timestamp)) > tolerance:
        raise SignatureError("Stripe signature timestamp outside tolerance")

    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureError("Stripe signature mismatch")


def verify_hex_hmac(secret: str, raw_body: bytes, signature: str | None) -> None:
    """Check a hex HMAC-SHA256 of the raw body (Wise ``x-signature-sha256``)."""
    if not signature:
        raise SignatureError("Missing x-signature-sha256 header")
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureError("Signature mismatch")


def verify_signature(provider: str, raw_body: bytes, headers: dict, secret: str | None = None) -> bool:
    """
    Verify the payload against the provider's shared secret.

    Returns:
        True when a secret was configured and the signature matched,
        False when no secret is configured (nothing to check).

    Raises:
        SignatureError: On a missing or mismatched signature.
    """
    settings = get_settings()
    if provider == "stripe":
        secret = secret or settings.stripe_webhook_secret
        if not secret:
            return False
        verify_stripe_signature(
            secret,
            raw_body,
            headers.get("stripe-signature"),
            settings.stripe_webhook_tolerance_seconds,
        )
        return True
    if provider == "wise":
        secret = secret or settings.wise_webhook_secret
        if not secret:
            return False
        verify_hex_hmac(secret, raw_body, headers.get("x-signature-sha256"))
        return True
    # PayPal signs with a certificate chain, not a shared secret.
    if not headers.get("paypal-transmission-id"):
        logger.warning("[WEBHOOK] PayPal webhook missing paypal-transmission-id header")
    return False


# --- Connection routing ---

def correlation_lookups(provider: str, event: dict) -> list[tuple[str, str]]:
    """(column, value) pairs that tie an event to exactly one connection."""
    lookups = []
    if provider == "stripe":
        if event.get("account"):
            lookups.append(("stripe_account_id", str(event["account"])))
    elif provider == "paypal":
        merchant_id = (event.get("resource") or {}).get("merchant_id")
        if merchant_id:
            lookups.append(("merchant_id", str(merchant_id)))
    elif provider == "wise":
        data = event.get("data") or {}
        profile_id = (data.get("resource") or {}).get("profile_id") or (data.get("resource") or {}).get("profileId")
        if profile_id:
            lookups.append(("profile_id", str(profile_id)))
        if data.get("balance_id"):
            lookups.append(("balance_id", str(data["balance_id"])))
    return lookups


def resolve_connection(db: Database, provider: str, event: dict) -> tuple[Connection | None, bool]:
    """
    Find the connection an event belongs to.

    Tries the provider's correlation fields first. When none match, falls
    back to the provider's only connection, if it has exactly one; with
    several candidates nothing is guessed.

    Returns:
        (connection, used_fallback)
    """
    for column, value in correlation_lookups(provider, event):
        rows = db.find_connections(provider, column, value)
        if rows:
            return connection_from_row(provider, rows[0]), False

    rows = db.list_connections(provider)
    if len(rows) == 1:
        connection = connection_from_row(provider, rows[0])
        logger.warning(
            f"[WEBHOOK] No correlated {provider} connection; falling back to the only "
            f"{provider} connection {connection.id} ({connection.account_name})"
        )
        return connection, True
    if rows:
        logger.warning(
            f"[WEBHOOK] No correlated {provider} connection and {len(rows)} candidates; not guessing"
        )
    return None, False


# --- Entry point ---

def ingest_webhook(db: Database, provider: str, raw_body: bytes | str, headers=None, now: datetime | None = None) -> dict:
    """
    Validate, deduplicate and route one inbound provider event.

    Always returns an acknowledgement dict ``{received, event_id, queued, ...}``;
    rejections carry an ``error`` and duplicates a ``message``.
    """
    try:
        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        headers = _lower_headers(headers)

        if provider not in PROVIDERS:
            logger.warning(f"[WEBHOOK] Ignored event for unknown provider {provider!r}")
            return _ack(error="Unknown provider")

        try:
            event = json.loads(raw_body)
        except ValueError:
            logger.warning(f"[WEBHOOK] Ignored {provider} event with invalid JSON")
            return _ack(error="Invalid JSON")
        if not isinstance(event, dict):
            logger.warning(f"[WEBHOOK] Ignored {provider} event with non-object payload")
            return _ack(error="Invalid payload")

        event_id = extract_event_id(provider, event, headers)
        if not event_id:
            logger.warning(f"[WEBHOOK] Ignored {provider} event without an event id")
            return _ack(error="No event_id found")

        connection, used_fallback = resolve_connection(db, provider, event)

        # A connection's own secret wins over the provider-wide one.
        try:
            verify_signature(
                provider,
                raw_body,
                headers,
                secret=connection.webhook_secret if connection else None,
            )
        except SignatureError as e:
            logger.warning(f"[WEBHOOK] Rejected {provider} event {event_id}: {e}")
            return _ack(event_id=event_id, error=str(e))

        if not db.record_webhook_event(provider, event_id):
            logger.info(f"[WEBHOOK] Duplicate {provider} event {event_id}, already processed")
            return _ack(event_id=event_id, message="Already processed")

        if connection is None:
            logger.warning(f"[WEBHOOK] No matching {provider} connection for event {event_id}")
            return _ack(event_id=event_id, message="No matching connection")

        now = now or utcnow()
        window = timedelta(hours=get_settings().webhook_window_hours)
        job = db.create_sync_job(job_queue.new_job(
            user_id=connection.user_id,
            connection_id=connection.id,
            provider=provider,
            job_type="webhook",
            chunk_start=now - window,
            chunk_end=now,
            priority=job_queue.WEBHOOK_PRIORITY,
        ))
    except Exception as e:
        logger.exception(f"[WEBHOOK] Error handling {provider} event")
        return _ack(error=str(e))

    logger.info(
        f"[WEBHOOK] Queued job {job['id']} for {provider} event {event_id} "
        f"(connection {connection.id}{', fallback match' if used_fallback else ''})"
    )
    return _ack(queued=True, event_id=event_id, job_id=job["id"], fallback_match=used_fallback)
