"""
Webhook management API - listing, stats, retries and retention.
All endpoints require the admin API key.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.api.deps import get_processor, get_webhook_queue, require_admin_key
from fieldsync.database import get_db
from fieldsync.models.webhook_event import WebhookStatus
from fieldsync.schemas.api_responses import DeleteOldEventsRequest, RetryEventsRequest
from fieldsync.services import webhook_store
from fieldsync.services.realtime import CHANNELS, recent_updates

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/admin/webhooks",
    tags=["webhook-management"],
    dependencies=[Depends(require_admin_key)],
)

REALTIME_CHANNELS = {channel for channel, _ in CHANNELS.values()}


@router.get("/stats")
async def webhook_stats(processor=Depends(get_processor), queue=Depends(get_webhook_queue)):
    """Totals by status, success rate and in-process queue counters."""
    stats = await processor.get_processing_stats()
    return {"success": True, "data": {**stats, "queue": queue.stats()}}


@router.get("/events")
async def list_webhook_events(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    if status and status not in WebhookStatus.ALL:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    events, total = await webhook_store.list_events(db, status=status, limit=limit, offset=offset)
    return {
        "success": True,
        "data": [e.to_dict() for e in events],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/events/failed")
async def list_failed_events(
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    events, total = await webhook_store.list_events(db, status=WebhookStatus.FAILED, limit=limit)
    return {"success": True, "data": [e.to_dict() for e in events], "total": total}


@router.get("/events/{event_id}")
async def get_webhook_event(event_id: str, db: AsyncSession = Depends(get_db)):
    event = await webhook_store.get_event(db, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return {"success": True, "data": event.to_dict()}


@router.post("/events/{event_id}/retry")
async def retry_webhook_event(event_id: str, processor=Depends(get_processor)):
    status = await processor.retry_event(event_id)
    if status is None:
        raise HTTPException(
            status_code=409, detail="Event not found or not in a retryable state"
        )
    return {
        "success": status == WebhookStatus.SUCCESS,
        "data": {"event_id": event_id, "status": status},
        "message": f"Event retry finished with status {status}",
    }


@router.post("/events/retry")
async def retry_multiple_events(body: RetryEventsRequest, processor=Depends(get_processor)):
    results = await processor.retry_events(body.event_ids)
    succeeded = sum(1 for s in results.values() if s == WebhookStatus.SUCCESS)
    return {
        "success": True,
        "data": results,
        "message": f"Retried {len(results)} events, {succeeded} succeeded",
    }


@router.post("/retry-failed")
async def retry_failed_events(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    processor=Depends(get_processor),
):
    retried = await processor.retry_failed_events(limit=limit)
    return {
        "success": True,
        "data": {"retried": retried},
        "message": f"{retried} failed events moved to success",
    }


@router.delete("/events/{event_id}")
async def delete_webhook_event(event_id: str, db: AsyncSession = Depends(get_db)):
    deleted = await webhook_store.delete_event(db, event_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    await db.commit()
    logger.info("Webhook event %s deleted by admin", event_id[:8])
    return {"success": True, "message": "Event deleted"}


@router.post("/cleanup")
async def delete_old_events(body: DeleteOldEventsRequest, db: AsyncSession = Depends(get_db)):
    """Delete terminal events older than N days. Queued and processing events are kept."""
    deleted = await webhook_store.delete_older_than(db, body.days)
    await db.commit()
    logger.info("Deleted %d webhook events older than %d days", deleted, body.days)
    return {
        "success": True,
        "data": {"deleted": deleted, "days": body.days},
        "message": f"Deleted {deleted} events older than {body.days} days",
    }


@router.get("/realtime/{channel}")
async def realtime_recent(channel: str, limit: int = Query(20, ge=1, le=100)):
    """Catch-up feed: the most recent broadcasts on a channel."""
    if channel not in REALTIME_CHANNELS:
        raise HTTPException(status_code=404, detail=f"Unknown channel: {channel}")
    return {"success": True, "data": await recent_updates(channel, limit)}
