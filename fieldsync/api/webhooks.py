"""
Webhook receiver - accepts ServiceM8 change notifications.

Order of checks:
1. Signature (HMAC-SHA256 over the raw body)
2. JSON parse
3. Payload structure
4. Record as queued, acknowledge, hand off to the work queue

Every delivery is recorded before the response is sent. Rejected deliveries
are recorded as failed with the reason, so there is an audit trail of what
was refused and why.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.api.deps import get_webhook_queue
from fieldsync.config import get_settings
from fieldsync.database import get_db
from fieldsync.models.webhook_event import WebhookStatus
from fieldsync.schemas.api_responses import WebhookAcceptedResponse
from fieldsync.schemas.servicem8 import WebhookPayload
from fieldsync.services import webhook_store
from fieldsync.utils.alerting import AlertType, send_alert
from fieldsync.utils.webhook_signatures import (
    SignatureCheck,
    check_webhook_signature,
    compute_payload_hash,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SUPPORTED_PROVIDERS = {"servicem8"}


def _check_provider(provider: str) -> str:
    provider = provider.lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown webhook provider: {provider}")
    return provider


async def _reject(
    db: AsyncSession,
    provider: str,
    payload,
    payload_hash: str,
    status_code: int,
    reason: str,
) -> None:
    """Record the refused delivery as failed, then raise the HTTP error."""
    event = await webhook_store.record_event(
        db,
        payload,
        payload_hash,
        status=WebhookStatus.FAILED,
        error_details=reason,
        provider=provider,
    )
    await db.commit()
    logger.warning(
        "Rejected %s webhook %s: %s", provider, str(event.id)[:8], reason,
        extra={"event_id": str(event.id)},
    )
    raise HTTPException(status_code=status_code, detail=reason)


@router.post("/{provider}", response_model=WebhookAcceptedResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    queue=Depends(get_webhook_queue),
):
    provider = _check_provider(provider)
    settings = get_settings()
    body = await request.body()
    payload_hash = compute_payload_hash(body)
    text = body.decode("utf-8", errors="replace")

    signature = request.headers.get(settings.webhook_signature_header, "")
    timestamp = request.headers.get(settings.webhook_timestamp_header)
    check = check_webhook_signature(signature, body, settings)
    if check not in SignatureCheck.ACCEPTED:
        await send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Rejected {provider} webhook: signature {check}",
            severity="warning",
        )
        try:
            stored = json.loads(text)
        except json.JSONDecodeError:
            stored = {"raw_body": text}
        await _reject(
            db, provider, stored, payload_hash, 401,
            f"Signature verification failed ({check})",
        )

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        await _reject(
            db, provider, {"raw_body": text}, payload_hash, 400,
            f"Malformed JSON payload: {e.msg}",
        )

    try:
        if not isinstance(raw, dict):
            raise ValueError("payload must be a JSON object")
        parsed = WebhookPayload.model_validate(raw)
    except (ValidationError, ValueError) as e:
        reason = _describe_invalid(e)
        await _reject(db, provider, raw if isinstance(raw, dict) else {"raw_body": text}, payload_hash, 400, reason)

    event = await webhook_store.record_event(db, raw, payload_hash, provider=provider)
    await db.commit()

    log_extra = {
        "event_id": str(event.id),
        "object_type": parsed.object_type.value,
        "object_uuid": parsed.object_uuid,
    }
    logger.info(
        "Webhook queued: %s %s %s (ts=%s)",
        parsed.object_type.value, parsed.event_type, parsed.object_uuid[:8],
        timestamp or "-", extra=log_extra,
    )

    if not queue.submit(event.id):
        logger.info("Event %s deferred to sweeper", str(event.id)[:8], extra=log_extra)

    return WebhookAcceptedResponse(
        success=True,
        message="Webhook received and queued for processing",
        eventId=str(event.id),
    )


@router.get("/{provider}")
async def webhook_endpoint_status(provider: str):
    """Lets ServiceM8 (and operators) confirm the endpoint is reachable."""
    provider = _check_provider(provider)
    return {
        "success": True,
        "message": f"{provider} webhook endpoint active",
    }


def _describe_invalid(error: Exception) -> str:
    if isinstance(error, ValidationError):
        fields = sorted({".".join(str(p) for p in err["loc"]) or "body" for err in error.errors()})
        return f"Invalid webhook payload: {', '.join(fields)}"
    return f"Invalid webhook payload: {error}"
