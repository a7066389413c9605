"""
Reconciliation scheduler - cron-style trigger for reconciliation runs.
Checks every 60 seconds.

- watchdog sweep every tick (fails runs stuck past budget + grace)
- full run once a day at RECONCILIATION_FULL_HOUR_UTC
- incremental run every RECONCILIATION_INCREMENTAL_INTERVAL_MINUTES

External cron can drive the same runs through POST /api/v1/cron/reconciliation;
set RECONCILIATION_SCHEDULER_ENABLED=false to rely on that instead.
"""
import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fieldsync.models.reconciliation_log import ReconciliationType
from fieldsync.utils.redis import heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "reconciliation_scheduler"
POLL_INTERVAL_SECONDS = 60


class SchedulerState:
    def __init__(self):
        self.last_incremental_at: Optional[datetime] = None
        self.last_full_day: Optional[date] = None


def due_run_type(
    now: datetime,
    state: SchedulerState,
    incremental_interval: timedelta,
    full_hour_utc: int,
) -> Optional[str]:
    """Which run (if any) is due at `now`. Full takes precedence over incremental."""
    if now.hour == full_hour_utc and state.last_full_day != now.date():
        return ReconciliationType.FULL
    if state.last_incremental_at is None or now - state.last_incremental_at >= incremental_interval:
        return ReconciliationType.INCREMENTAL
    return None


async def schedule_once(engine, state: SchedulerState, settings, now: Optional[datetime] = None) -> Optional[str]:
    now = now or datetime.now(timezone.utc)
    await engine.watchdog_sweep()

    run_type = due_run_type(
        now,
        state,
        timedelta(minutes=settings.reconciliation_incremental_interval_minutes),
        settings.reconciliation_full_hour_utc,
    )
    if run_type is None:
        return None

    log = await engine.run(run_type, actor="scheduler")
    if run_type == ReconciliationType.FULL:
        state.last_full_day = now.date()
    # A full run covers everything an incremental would
    state.last_incremental_at = now
    logger.info("Scheduled %s reconciliation finished: %s", run_type, log.status)
    return run_type


async def run_reconciliation_scheduler(engine, settings=None):
    """Main loop. Runs continuously."""
    if settings is None:
        from fieldsync.config import get_settings
        settings = get_settings()

    logger.info(
        "Reconciliation scheduler started (incremental every %dm, full at %02d:00 UTC)",
        settings.reconciliation_incremental_interval_minutes,
        settings.reconciliation_full_hour_utc,
    )
    state = SchedulerState()

    while True:
        try:
            await schedule_once(engine, state, settings)
        except Exception as e:
            logger.error("Reconciliation scheduler error: %s", str(e), exc_info=True)

        await heartbeat(WORKER_NAME)
        await asyncio.sleep(POLL_INTERVAL_SECONDS)
