"""
Tests for the background workers:
- webhook_sweeper: sweep_once passes and the main loop
- reconciliation_scheduler: due_run_type, schedule_once and the main loop
"""
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fieldsync.models.reconciliation_log import ReconciliationType
from fieldsync.models.webhook_event import WebhookEvent, WebhookStatus
from fieldsync.services import webhook_store
from fieldsync.services.webhook_queue import WebhookQueue
from fieldsync.workers.reconciliation_scheduler import (
    SchedulerState,
    due_run_type,
    run_reconciliation_scheduler,
    schedule_once,
)
from fieldsync.workers.webhook_sweeper import SweeperState, run_webhook_sweeper, sweep_once


def _make_processor(retried: int = 0):
    processor = MagicMock()
    processor.process_event = AsyncMock(return_value=WebhookStatus.SUCCESS)
    processor.retry_failed_events = AsyncMock(return_value=retried)
    return processor


def _make_queue(accept: bool = True):
    queue = MagicMock()
    queue.submit = MagicMock(return_value=accept)
    queue.is_pending = MagicMock(return_value=False)
    return queue


async def _queued_event(session_factory, age: timedelta = timedelta(0), status=WebhookStatus.QUEUED):
    async with session_factory() as db:
        event = await webhook_store.record_event(
            db, {"object_type": "Job", "object_uuid": "j-1", "event_type": "updated"}, "hash", status=status
        )
        event.created_at = datetime.now(timezone.utc) - age
        await db.commit()
        return event.id


# ============================================================================
# Webhook sweeper
# ============================================================================


class TestSweepOnce:
    async def test_old_queued_events_are_requeued(self, session_factory):
        old = await _queued_event(session_factory, age=timedelta(minutes=5))
        await _queued_event(session_factory)  # still within the grace period
        queue = _make_queue()

        counts = await sweep_once(_make_processor(), queue, SweeperState(), 30, session_factory=session_factory)

        assert counts["requeued"] == 1
        queue.submit.assert_called_once_with(old)

    async def test_event_already_in_queue_not_resubmitted(self, session_factory):
        old = await _queued_event(session_factory, age=timedelta(minutes=5))
        processor = _make_processor()
        queue = WebhookQueue(processor, maxsize=10)  # workers not started
        queue.submit(old)
        state = SweeperState()

        for _ in range(3):
            counts = await sweep_once(processor, queue, state, 30, session_factory=session_factory)

        assert counts["already_queued"] == 1
        assert counts["requeued"] == 0
        assert queue.stats()["size"] == 1
        processor.process_event.assert_not_awaited()

    async def test_full_queue_processes_inline(self, session_factory):
        old = await _queued_event(session_factory, age=timedelta(minutes=5))
        processor = _make_processor()

        counts = await sweep_once(
            processor, _make_queue(accept=False), SweeperState(), 30, session_factory=session_factory
        )

        assert counts["inline"] == 1
        processor.process_event.assert_awaited_once_with(old)

    async def test_retry_runs_on_interval(self, session_factory):
        processor = _make_processor(retried=2)
        state = SweeperState()
        now = datetime.now(timezone.utc)

        first = await sweep_once(processor, _make_queue(), state, 30, session_factory=session_factory, now=now)
        second = await sweep_once(
            processor, _make_queue(), state, 30, session_factory=session_factory, now=now + timedelta(minutes=1)
        )
        third = await sweep_once(
            processor, _make_queue(), state, 30, session_factory=session_factory, now=now + timedelta(minutes=6)
        )

        assert [first["retried"], second["retried"], third["retried"]] == [2, 0, 2]
        assert processor.retry_failed_events.await_count == 2

    async def test_retention_deletes_old_terminal_events_once_a_day(self, session_factory):
        await _queued_event(session_factory, age=timedelta(days=40), status=WebhookStatus.SUCCESS)
        await _queued_event(session_factory, age=timedelta(days=40), status=WebhookStatus.FAILED)
        await _queued_event(session_factory, age=timedelta(days=1), status=WebhookStatus.SUCCESS)
        state = SweeperState()

        counts = await sweep_once(_make_processor(), _make_queue(), state, 30, session_factory=session_factory)

        assert counts["deleted"] == 2
        assert state.last_retention_day == datetime.now(timezone.utc).date()

    async def test_retention_never_drops_queued_work(self, session_factory):
        await _queued_event(session_factory, age=timedelta(days=40))
        state = SweeperState()

        counts = await sweep_once(_make_processor(), _make_queue(), state, 30, session_factory=session_factory)

        assert counts["deleted"] == 0
        assert counts["requeued"] == 1

    async def test_retention_skipped_same_day(self, session_factory):
        await _queued_event(session_factory, age=timedelta(days=40), status=WebhookStatus.SUCCESS)
        state = SweeperState()
        state.last_retention_day = datetime.now(timezone.utc).date()

        counts = await sweep_once(_make_processor(), _make_queue(), state, 30, session_factory=session_factory)

        assert counts["deleted"] == 0

    async def test_stale_processing_failed(self, session_factory):
        event_id = await _queued_event(session_factory, status=WebhookStatus.PROCESSING)
        async with session_factory() as db:
            event = await db.get(WebhookEvent, event_id)
            event.claimed_at = datetime.now(timezone.utc) - timedelta(minutes=30)
            await db.commit()

        counts = await sweep_once(_make_processor(), _make_queue(), SweeperState(), 30, session_factory=session_factory)

        assert counts["stale_failed"] == 1


class TestRunWebhookSweeper:
    async def test_loop_sweeps_then_heartbeats_then_sleeps(self):
        call_order = []
        settings = SimpleNamespace(webhook_poll_interval_seconds=30, webhook_retention_days=30)

        async def fake_sweep(*args, **kwargs):
            call_order.append("sweep")

        async def fake_heartbeat(name):
            call_order.append(("heartbeat", name))

        async def fake_sleep(seconds):
            call_order.append(("sleep", seconds))
            raise KeyboardInterrupt()

        with (
            patch("fieldsync.workers.webhook_sweeper.sweep_once", side_effect=fake_sweep),
            patch("fieldsync.workers.webhook_sweeper.heartbeat", side_effect=fake_heartbeat),
            patch("fieldsync.workers.webhook_sweeper.asyncio.sleep", side_effect=fake_sleep),
        ):
            with pytest.raises(KeyboardInterrupt):
                await run_webhook_sweeper(_make_processor(), _make_queue(), settings)

        assert call_order == ["sweep", ("heartbeat", "webhook_sweeper"), ("sleep", 30)]

    async def test_loop_survives_sweep_errors(self):
        settings = SimpleNamespace(webhook_poll_interval_seconds=5, webhook_retention_days=30)
        sleep = AsyncMock(side_effect=[None, KeyboardInterrupt()])
        sweep = AsyncMock(side_effect=[RuntimeError("db down"), {}])

        with (
            patch("fieldsync.workers.webhook_sweeper.sweep_once", sweep),
            patch("fieldsync.workers.webhook_sweeper.heartbeat", new_callable=AsyncMock),
            patch("fieldsync.workers.webhook_sweeper.asyncio.sleep", sleep),
        ):
            with pytest.raises(KeyboardInterrupt):
                await run_webhook_sweeper(_make_processor(), _make_queue(), settings)

        assert sweep.await_count == 2


# ============================================================================
# Reconciliation scheduler
# ============================================================================


def _settings(interval=15, full_hour=2):
    return SimpleNamespace(
        reconciliation_incremental_interval_minutes=interval,
        reconciliation_full_hour_utc=full_hour,
    )


def _make_engine(status="completed"):
    engine = MagicMock()
    engine.watchdog_sweep = AsyncMock(return_value=0)
    engine.run = AsyncMock(return_value=SimpleNamespace(status=status))
    return engine


class TestDueRunType:
    INTERVAL = timedelta(minutes=15)

    def test_first_tick_runs_incremental(self):
        now = datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc)
        assert due_run_type(now, SchedulerState(), self.INTERVAL, 2) == ReconciliationType.INCREMENTAL

    def test_full_at_configured_hour(self):
        now = datetime(2026, 10, 1, 2, 5, tzinfo=timezone.utc)
        state = SchedulerState()
        state.last_incremental_at = now - timedelta(minutes=1)
        assert due_run_type(now, state, self.INTERVAL, 2) == ReconciliationType.FULL

    def test_full_only_once_per_day(self):
        now = datetime(2026, 10, 1, 2, 30, tzinfo=timezone.utc)
        state = SchedulerState()
        state.last_full_day = date(2026, 10, 1)
        state.last_incremental_at = now - timedelta(minutes=5)
        assert due_run_type(now, state, self.INTERVAL, 2) is None

    def test_incremental_after_interval(self):
        now = datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc)
        state = SchedulerState()
        state.last_incremental_at = now - timedelta(minutes=15)
        assert due_run_type(now, state, self.INTERVAL, 2) == ReconciliationType.INCREMENTAL


class TestScheduleOnce:
    async def test_runs_due_incremental_and_records_state(self):
        engine = _make_engine()
        state = SchedulerState()
        now = datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc)

        result = await schedule_once(engine, state, _settings(), now=now)

        assert result == ReconciliationType.INCREMENTAL
        engine.watchdog_sweep.assert_awaited_once()
        engine.run.assert_awaited_once_with(ReconciliationType.INCREMENTAL, actor="scheduler")
        assert state.last_incremental_at == now

    async def test_full_run_also_resets_incremental_clock(self):
        engine = _make_engine()
        state = SchedulerState()
        now = datetime(2026, 10, 1, 2, 0, tzinfo=timezone.utc)

        assert await schedule_once(engine, state, _settings(), now=now) == ReconciliationType.FULL
        assert state.last_full_day == now.date()
        assert state.last_incremental_at == now

    async def test_nothing_due_still_runs_watchdog(self):
        engine = _make_engine()
        state = SchedulerState()
        now = datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc)
        state.last_incremental_at = now - timedelta(minutes=1)

        assert await schedule_once(engine, state, _settings(), now=now) is None
        engine.watchdog_sweep.assert_awaited_once()
        engine.run.assert_not_awaited()


class TestRunReconciliationScheduler:
    async def test_loop_heartbeats_after_error(self):
        engine = _make_engine()
        engine.watchdog_sweep = AsyncMock(side_effect=RuntimeError("db down"))
        heartbeat = AsyncMock()

        with (
            patch("fieldsync.workers.reconciliation_scheduler.heartbeat", heartbeat),
            patch(
                "fieldsync.workers.reconciliation_scheduler.asyncio.sleep",
                AsyncMock(side_effect=KeyboardInterrupt()),
            ),
        ):
            with pytest.raises(KeyboardInterrupt):
                await run_reconciliation_scheduler(engine, _settings())

        heartbeat.assert_awaited_once_with("reconciliation_scheduler")
