"""
Webhook event persistence - recording deliveries and the queries behind
the management API and background sweeps.
"""
import logging
import random
import string
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.models.webhook_event import WebhookEvent, WebhookStatus
from fieldsync.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)


def generate_event_id() -> str:
    """sm8_{epoch_ms}_{random}"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"sm8_{int(time.time() * 1000)}_{suffix}"


def as_event_uuid(event_id: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
    if isinstance(event_id, uuid.UUID):
        return event_id
    try:
        return uuid.UUID(str(event_id))
    except ValueError:
        return None


async def record_event(
    db: AsyncSession,
    raw_payload: Optional[dict],
    payload_hash: str,
    status: str = WebhookStatus.QUEUED,
    error_details: Optional[str] = None,
    provider: str = "servicem8",
) -> WebhookEvent:
    """Record a delivery before any processing. Rejected deliveries are stored as failed."""
    payload = raw_payload if isinstance(raw_payload, dict) else None
    event = WebhookEvent(
        sm8_event_id=generate_event_id(),
        provider=provider,
        object_type=_str_or_none(payload, "object_type"),
        object_uuid=_str_or_none(payload, "object_uuid"),
        event_type=_str_or_none(payload, "event_type"),
        raw_payload=raw_payload,
        payload_hash=payload_hash,
        status=status,
        attempts=0,
        error_details=error_details,
        correlation_id=get_correlation_id(),
    )
    if status in WebhookStatus.TERMINAL:
        event.processed_at = datetime.now(timezone.utc)
    db.add(event)
    await db.flush()
    return event


def _str_or_none(payload: Optional[dict], key: str) -> Optional[str]:
    if not payload:
        return None
    value = payload.get(key)
    if value is None:
        return None
    return str(value)[:64]


async def get_event(db: AsyncSession, event_id) -> Optional[WebhookEvent]:
    event_uuid = as_event_uuid(event_id)
    if event_uuid is None:
        return None
    return await db.get(WebhookEvent, event_uuid)


async def list_events(
    db: AsyncSession,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WebhookEvent], int]:
    query = select(WebhookEvent)
    count_query = select(func.count(WebhookEvent.id))
    if status:
        query = query.where(WebhookEvent.status == status)
        count_query = count_query.where(WebhookEvent.status == status)

    total = await db.scalar(count_query) or 0
    result = await db.execute(
        query.order_by(WebhookEvent.created_at.desc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all()), total


async def count_by_status(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(
        select(WebhookEvent.status, func.count(WebhookEvent.id)).group_by(WebhookEvent.status)
    )
    counts = {status: 0 for status in WebhookStatus.ALL}
    for status, count in result.all():
        counts[status] = count
    return counts


async def ids_with_status(
    db: AsyncSession,
    status: str,
    limit: Optional[int] = None,
    older_than: Optional[datetime] = None,
) -> list[uuid.UUID]:
    query = select(WebhookEvent.id).where(WebhookEvent.status == status)
    if older_than is not None:
        query = query.where(WebhookEvent.created_at < older_than)
    query = query.order_by(WebhookEvent.created_at)
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def delete_event(db: AsyncSession, event_id) -> bool:
    event_uuid = as_event_uuid(event_id)
    if event_uuid is None:
        return False
    result = await db.execute(delete(WebhookEvent).where(WebhookEvent.id == event_uuid))
    return result.rowcount > 0


async def delete_older_than(db: AsyncSession, days: int) -> int:
    """Retention sweep. Only terminal events are removed; queued work is never dropped."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    result = await db.execute(
        delete(WebhookEvent).where(
            WebhookEvent.created_at < cutoff,
            WebhookEvent.status.in_(WebhookStatus.TERMINAL),
        )
    )
    return result.rowcount


async def fail_stale_processing(db: AsyncSession, stale_after: timedelta) -> int:
    """
    Events stuck in processing (worker died mid-flight) move to failed so
    the retry path can pick them up again.
    """
    cutoff = datetime.now(timezone.utc) - stale_after
    result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.status == WebhookStatus.PROCESSING,
            WebhookEvent.claimed_at < cutoff,
        )
        .values(
            status=WebhookStatus.FAILED,
            error_details="Processing interrupted before completion",
            processed_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount
