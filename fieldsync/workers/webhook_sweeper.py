"""
Webhook sweeper - the durable side of webhook processing.
Runs every WEBHOOK_POLL_INTERVAL_SECONDS (default 30).

Each pass:
1. Events stuck in processing (worker died mid-flight) move to failed
2. Queued events the in-process queue does not hold (overflow, restart)
   are handed to the queue again, or processed inline if it is full
3. Failed events with attempts left are retried (every RETRY_INTERVAL)
4. Terminal events past the retention window are deleted (once a day)
"""
import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.database import async_session_factory
from fieldsync.models.webhook_event import WebhookStatus
from fieldsync.services import webhook_store
from fieldsync.utils.redis import heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "webhook_sweeper"
QUEUED_GRACE_SECONDS = 60
STALE_PROCESSING = timedelta(minutes=10)
RETRY_INTERVAL = timedelta(minutes=5)
SWEEP_BATCH_SIZE = 100
RETRY_BATCH_SIZE = 50


class SweeperState:
    def __init__(self):
        self.last_retry_at: Optional[datetime] = None
        self.last_retention_day: Optional[date] = None


async def sweep_once(
    processor,
    queue,
    state: SweeperState,
    retention_days: int,
    session_factory: Callable[[], AsyncSession] = async_session_factory,
    now: Optional[datetime] = None,
) -> dict:
    """One sweeper pass. Returns counters for logging and tests."""
    now = now or datetime.now(timezone.utc)
    counts = {
        "stale_failed": 0, "already_queued": 0, "requeued": 0, "inline": 0, "retried": 0, "deleted": 0,
    }

    async with session_factory() as db:
        counts["stale_failed"] = await webhook_store.fail_stale_processing(db, STALE_PROCESSING)
        orphaned = await webhook_store.ids_with_status(
            db,
            WebhookStatus.QUEUED,
            limit=SWEEP_BATCH_SIZE,
            older_than=now - timedelta(seconds=QUEUED_GRACE_SECONDS),
        )
        await db.commit()

    for event_id in orphaned:
        if queue is not None and queue.is_pending(event_id):
            counts["already_queued"] += 1
            continue
        if queue is not None and queue.submit(event_id):
            counts["requeued"] += 1
        else:
            await processor.process_event(event_id)
            counts["inline"] += 1

    if state.last_retry_at is None or now - state.last_retry_at >= RETRY_INTERVAL:
        counts["retried"] = await processor.retry_failed_events(limit=RETRY_BATCH_SIZE)
        state.last_retry_at = now

    if state.last_retention_day != now.date():
        async with session_factory() as db:
            counts["deleted"] = await webhook_store.delete_older_than(db, retention_days)
            await db.commit()
        state.last_retention_day = now.date()
        if counts["deleted"]:
            logger.info(
                "Webhook retention: deleted %d events older than %d days",
                counts["deleted"], retention_days,
            )

    if counts["stale_failed"] or counts["requeued"] or counts["inline"] or counts["retried"]:
        logger.info(
            "Webhook sweep: stale=%d requeued=%d inline=%d retried=%d",
            counts["stale_failed"], counts["requeued"], counts["inline"], counts["retried"],
        )
    return counts


async def run_webhook_sweeper(processor, queue, settings=None):
    """Main loop. Runs continuously."""
    if settings is None:
        from fieldsync.config import get_settings
        settings = get_settings()

    interval = settings.webhook_poll_interval_seconds
    logger.info("Webhook sweeper started (poll every %ds)", interval)
    state = SweeperState()

    while True:
        try:
            await sweep_once(processor, queue, state, settings.webhook_retention_days)
        except Exception as e:
            logger.error("Webhook sweeper error: %s", str(e), exc_info=True)

        await heartbeat(WORKER_NAME)
        await asyncio.sleep(interval)
