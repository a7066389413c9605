"""
Webhook processor - drains recorded ServiceM8 events into the local store.

State machine per event:
    queued -> processing -> success | failed
    failed -> processing (retry)

Claiming is a conditional UPDATE on the current status, so two workers
racing on the same event cannot both process it. processed_at is cleared on
claim and set on both terminal states.

Handlers never trust the webhook body for entity data: it is a change
notification, so each handler re-fetches the current snapshot and upserts
it. Duplicate or out-of-order deliveries therefore re-apply the latest
state, which the upsert diff turns into a no-op.
"""
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.database import async_session_factory
from fieldsync.integrations.errors import NotFoundError
from fieldsync.integrations.servicem8 import ServiceM8Client
from fieldsync.models.attachment import Attachment
from fieldsync.models.company import Company
from fieldsync.models.job import Job
from fieldsync.models.job_activity import JobActivity
from fieldsync.models.webhook_event import WebhookEvent, WebhookStatus
from fieldsync.schemas.servicem8 import (
    SM8Attachment,
    SM8Job,
    SM8JobActivity,
    WebhookObjectType,
    WebhookPayload,
)
from fieldsync.services import webhook_store
from fieldsync.services.realtime import UPDATE_EVENT, build_update
from fieldsync.services.sync import SyncService
from fieldsync.utils.alerting import AlertType, send_alert
from fieldsync.utils.logging import correlation_scope

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
MAX_ERROR_HISTORY = 20


class Broadcaster(Protocol):
    async def broadcast(self, channel: str, event: str, payload: dict) -> None: ...


class WebhookProcessor:
    """Applies webhook events via the sync service and broadcasts the result."""

    def __init__(
        self,
        client: ServiceM8Client,
        sync_service: SyncService,
        broadcaster: Optional[Broadcaster] = None,
        session_factory: Callable[[], AsyncSession] = async_session_factory,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.client = client
        self.sync = sync_service
        self.broadcaster = broadcaster
        self._session_factory = session_factory
        self.max_attempts = max_attempts

        self._handlers: dict[WebhookObjectType, Callable[[WebhookPayload], Awaitable[None]]] = {
            WebhookObjectType.JOB: self._handle_job,
            WebhookObjectType.COMPANY: self._handle_company,
            WebhookObjectType.JOB_ACTIVITY: self._handle_job_activity,
            WebhookObjectType.ATTACHMENT: self._handle_attachment,
            WebhookObjectType.STAFF: self._handle_staff,
        }
        unhandled = set(WebhookObjectType) - set(self._handlers)
        if unhandled:
            raise RuntimeError(f"No webhook handler for: {sorted(t.value for t in unhandled)}")

    # ------------------------------------------------------------------
    # Event lifecycle
    # ------------------------------------------------------------------

    async def process_event(self, event_id, payload: Optional[dict] = None) -> Optional[str]:
        """
        Claim and process one event. Returns the terminal status, or None
        when the event was not claimable (missing, already processing or done).
        """
        event = await self._claim(event_id)
        if event is None:
            logger.info("Webhook event %s not claimable - skipping", str(event_id)[:8])
            return None

        with correlation_scope(event.correlation_id):
            return await self._apply(event, payload)

    async def _apply(self, event: WebhookEvent, payload: Optional[dict]) -> str:
        log_extra = {"event_id": str(event.id), "object_uuid": event.object_uuid, "attempt": event.attempts}
        try:
            parsed = WebhookPayload.model_validate(payload if payload is not None else event.raw_payload)
            await self._handlers[parsed.object_type](parsed)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.warning(
                "Webhook event %s failed (attempt %d): %s",
                str(event.id)[:8], event.attempts, message, extra=log_extra,
            )
            await self._finish(event.id, WebhookStatus.FAILED, event.attempts, message)
            return WebhookStatus.FAILED

        await self._broadcast(parsed)
        await self._finish(event.id, WebhookStatus.SUCCESS, event.attempts)
        logger.info(
            "Webhook event %s processed: %s %s %s",
            str(event.id)[:8], parsed.object_type.value, parsed.event_type,
            parsed.object_uuid[:8], extra=log_extra,
        )
        return WebhookStatus.SUCCESS

    async def _claim(self, event_id) -> Optional[WebhookEvent]:
        event_uuid = webhook_store.as_event_uuid(event_id)
        if event_uuid is None:
            return None
        async with self._session_factory() as db:
            result = await db.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == event_uuid,
                    WebhookEvent.status.in_(WebhookStatus.CLAIMABLE),
                )
                .values(
                    status=WebhookStatus.PROCESSING,
                    attempts=WebhookEvent.attempts + 1,
                    claimed_at=datetime.now(timezone.utc),
                    processed_at=None,
                )
            )
            await db.commit()
            if result.rowcount == 0:
                return None
            return await db.get(WebhookEvent, event_uuid, populate_existing=True)

    async def _finish(
        self,
        event_id,
        status: str,
        attempt: int,
        error: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as db:
            event = await db.get(WebhookEvent, event_id)
            if event is None:
                return
            event.status = status
            event.processed_at = datetime.now(timezone.utc)
            if error is not None:
                event.error_details = error
                history = list(event.error_history or [])
                history.append({
                    "attempt": attempt,
                    "error": error,
                    "at": event.processed_at.isoformat(),
                })
                event.error_history = history[-MAX_ERROR_HISTORY:]
            await db.commit()

    async def _broadcast(self, payload: WebhookPayload) -> None:
        if self.broadcaster is None:
            return
        update_message = build_update(
            payload.object_type,
            payload.object_uuid,
            payload.event_type,
            payload.changes,
            timestamp=payload.timestamp,
        )
        if update_message is None:
            return
        channel, body = update_message
        try:
            await self.broadcaster.broadcast(channel, UPDATE_EVENT, body)
        except Exception as e:
            logger.warning("Realtime broadcast on %s failed: %s", channel, str(e))

    # ------------------------------------------------------------------
    # Entity handlers
    # ------------------------------------------------------------------

    async def _handle_job(self, payload: WebhookPayload) -> None:
        try:
            raw = await self.client.get_job(payload.object_uuid)
        except NotFoundError:
            if await self._handle_upstream_delete(payload, Job):
                return
            raise

        job = SM8Job.model_validate(raw)
        await self.sync.upsert_job(job)
        if job.has_quote:
            await self.sync.upsert_quote(job)
        self.client.invalidate("job")

        related = payload.related_objects
        if related is None:
            return
        if related.activities_modified or related.activities_added:
            activities = await self.client.get_job_activities(job.uuid, fresh=True)
            _raise_on_errors(await self.sync.sync_job_activities(job.uuid, activities["data"]))
        if related.attachments_added:
            attachments = await self.client.get_job_attachments(job.uuid, fresh=True)
            _raise_on_errors(await self.sync.sync_job_attachments(job.uuid, attachments["data"]))
        if related.materials_updated:
            materials = await self.client.get_job_materials(job.uuid, fresh=True)
            _raise_on_errors(await self.sync.sync_job_materials(job.uuid, materials["data"]))

    async def _handle_company(self, payload: WebhookPayload) -> None:
        try:
            raw = await self.client.get_company(payload.object_uuid)
        except NotFoundError:
            if await self._handle_upstream_delete(payload, Company):
                return
            raise
        await self.sync.upsert_company(raw)
        self.client.invalidate("company")

    async def _handle_job_activity(self, payload: WebhookPayload) -> None:
        try:
            raw = await self.client.get_job_activity(payload.object_uuid)
        except NotFoundError:
            if await self._handle_upstream_delete(payload, JobActivity):
                return
            raise
        activity = SM8JobActivity.model_validate(raw)
        await self._ensure_job(activity.job_uuid)
        await self.sync.upsert_job_activity(activity)
        self.client.invalidate("jobactivity")

    async def _handle_attachment(self, payload: WebhookPayload) -> None:
        try:
            raw = await self.client.get_attachment(payload.object_uuid)
        except NotFoundError:
            if await self._handle_upstream_delete(payload, Attachment):
                return
            raise
        attachment = SM8Attachment.model_validate(raw)
        await self._ensure_job(attachment.job_uuid)
        await self.sync.upsert_attachment(attachment)
        self.client.invalidate("attachment")

    async def _handle_staff(self, payload: WebhookPayload) -> None:
        # Acknowledged only; staff changes surface through job activities.
        logger.debug("Staff event %s acknowledged", payload.object_uuid[:8])

    async def _ensure_job(self, job_uuid: str) -> None:
        """Child entities need their parent job locally; pull it if it is missing."""
        if await self.sync.job_exists(job_uuid):
            return
        job = SM8Job.model_validate(await self.client.get_job(job_uuid))
        await self.sync.upsert_job(job)
        if job.has_quote:
            await self.sync.upsert_quote(job)

    async def _handle_upstream_delete(self, payload: WebhookPayload, model) -> bool:
        """A deleted event for an entity ServiceM8 no longer has is applied as a soft delete."""
        if payload.event_type != "deleted":
            return False
        removed = await self.sync.soft_delete(model, payload.object_uuid)
        logger.info(
            "%s %s deleted upstream (local row %s)",
            payload.object_type.value, payload.object_uuid[:8],
            "soft-deleted" if removed else "absent",
        )
        return True

    # ------------------------------------------------------------------
    # Retries and stats
    # ------------------------------------------------------------------

    async def retry_event(self, event_id) -> Optional[str]:
        """Operator-initiated retry of a single event (not subject to the attempt cap)."""
        return await self.process_event(event_id)

    async def retry_events(self, event_ids: list) -> dict[str, Optional[str]]:
        results = {}
        for event_id in event_ids:
            results[str(event_id)] = await self.process_event(event_id)
        return results

    async def retry_failed_events(self, limit: Optional[int] = None) -> int:
        """
        Re-run every failed event that still has attempts left.
        Returns how many moved to success. Cadence is the caller's concern.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent.id, WebhookEvent.attempts)
                .where(WebhookEvent.status == WebhookStatus.FAILED)
                .order_by(WebhookEvent.created_at)
                .limit(limit)
            )
            candidates = result.all()

        retried = 0
        exhausted = []
        for event_id, attempts in candidates:
            if attempts >= self.max_attempts:
                exhausted.append(str(event_id))
                continue
            if await self.process_event(event_id) == WebhookStatus.SUCCESS:
                retried += 1

        if exhausted:
            logger.warning("%d failed webhook events have exhausted retries", len(exhausted))
            await send_alert(
                AlertType.WEBHOOK_RETRIES_EXHAUSTED,
                f"{len(exhausted)} webhook events exceeded {self.max_attempts} attempts",
                extra={"event_ids": ", ".join(e[:8] for e in exhausted[:10])},
            )
        if candidates:
            logger.info("Retried failed webhook events: %d/%d succeeded", retried, len(candidates) - len(exhausted))
        return retried

    async def get_processing_stats(self) -> dict:
        async with self._session_factory() as db:
            by_status = await webhook_store.count_by_status(db)
        total = sum(by_status.values())
        success_rate = round(by_status[WebhookStatus.SUCCESS] / total * 100, 2) if total else 0.0
        return {
            "total": total,
            "by_status": by_status,
            "success_rate": success_rate,
        }


def _raise_on_errors(status) -> None:
    if status.failed_records:
        raise RuntimeError("; ".join(status.errors))
