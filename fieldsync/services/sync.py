"""
Sync service - maps ServiceM8 entities onto local rows.

Upsert policy: look the row up by ServiceM8 UUID; insert if absent; if
present, write only the columns whose mapped value changed and bump
updated_at only then. Re-applying the same snapshot is a no-op, which is
what makes duplicate webhook deliveries and overlapping reconciliation
runs safe. Concurrent inserts of the same UUID are resolved by retrying
the losing insert as an update (last write wins on the value diff).

Each record is written in its own transaction. Batch operations catch
per-record failures into SyncStatus.errors and keep going; only a rate
limit stop propagates, so full sync can skip the remaining companies.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import BaseModel, ValidationError as PayloadValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.database import async_session_factory
from fieldsync.integrations.errors import RateLimitedError, ServiceM8Error
from fieldsync.integrations.servicem8 import ServiceM8Client
from fieldsync.models.attachment import Attachment
from fieldsync.models.audit_log import AuditLog
from fieldsync.models.company import Company
from fieldsync.models.job import Job
from fieldsync.models.job_activity import JobActivity
from fieldsync.models.material import Material
from fieldsync.models.quote import Quote
from fieldsync.models.staff import Staff
from fieldsync.schemas.servicem8 import (
    RequestOptions,
    SM8Attachment,
    SM8Company,
    SM8Job,
    SM8JobActivity,
    SM8Material,
    SM8Staff,
)
from fieldsync.schemas.sync import CompanySyncStatus, FullSyncResult, SyncStatus
from fieldsync.services import entity_mapping
from fieldsync.services.audit import record_audit

logger = logging.getLogger(__name__)


class UpsertResult:
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"

    CHANGED = (CREATED, UPDATED)


class SyncService:
    """Pull-based synchronization against a shared ServiceM8 client."""

    def __init__(
        self,
        client: ServiceM8Client,
        session_factory: Callable[[], AsyncSession] = async_session_factory,
    ):
        self.client = client
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    async def _upsert(self, model, sm8_uuid: str, values: dict[str, Any]) -> str:
        if hasattr(model, "deleted_at"):
            values = {**values, "deleted_at": None}

        async with self._session_factory() as db:
            row = await _load_by_uuid(db, model, sm8_uuid)
            if row is None:
                db.add(model(sm8_uuid=sm8_uuid, **values))
                try:
                    await db.commit()
                    return UpsertResult.CREATED
                except IntegrityError:
                    # Lost an insert race for this UUID; apply as an update instead
                    await db.rollback()
                    row = await _load_by_uuid(db, model, sm8_uuid)
                    if row is None:
                        raise

            changed = entity_mapping.diff_fields(row, values)
            if not changed:
                return UpsertResult.UNCHANGED
            for field, value in changed.items():
                setattr(row, field, value)
            row.updated_at = datetime.now(timezone.utc)
            await db.commit()
            logger.debug(
                "Updated %s %s fields=%s", model.__tablename__, sm8_uuid[:8], sorted(changed)
            )
            return UpsertResult.UPDATED

    async def upsert_company(self, company: Union[SM8Company, dict]) -> str:
        company = _coerce(SM8Company, company)
        return await self._upsert(Company, company.uuid, entity_mapping.map_company(company))

    async def upsert_job(self, job: Union[SM8Job, dict]) -> str:
        job = _coerce(SM8Job, job)
        return await self._upsert(Job, job.uuid, entity_mapping.map_job(job))

    async def upsert_quote(self, job: Union[SM8Job, dict]) -> str:
        """Quote state lives on the ServiceM8 job; the local job row must exist."""
        job = _coerce(SM8Job, job)
        async with self._session_factory() as db:
            local_job = await _load_by_uuid(db, Job, job.uuid)
            if local_job is None:
                raise ValueError(f"Job {job.uuid} not found locally")

            result = await db.execute(select(Quote).where(Quote.job_id == local_job.id))
            quote = result.scalar_one_or_none()
            values = entity_mapping.map_quote(job, quote.rejected_at if quote else None)

            if quote is None:
                db.add(Quote(job_id=local_job.id, **values))
                try:
                    await db.commit()
                    return UpsertResult.CREATED
                except IntegrityError:
                    await db.rollback()
                    result = await db.execute(select(Quote).where(Quote.job_id == local_job.id))
                    quote = result.scalar_one()

            changed = entity_mapping.diff_fields(quote, values)
            if not changed:
                return UpsertResult.UNCHANGED
            for field, value in changed.items():
                setattr(quote, field, value)
            quote.updated_at = datetime.now(timezone.utc)
            await db.commit()
            return UpsertResult.UPDATED

    async def upsert_job_activity(self, activity: Union[SM8JobActivity, dict]) -> str:
        activity = _coerce(SM8JobActivity, activity)
        return await self._upsert(
            JobActivity, activity.uuid, entity_mapping.map_job_activity(activity)
        )

    async def upsert_attachment(self, attachment: Union[SM8Attachment, dict]) -> str:
        attachment = _coerce(SM8Attachment, attachment)
        return await self._upsert(
            Attachment, attachment.uuid, entity_mapping.map_attachment(attachment)
        )

    async def upsert_material(self, material: Union[SM8Material, dict]) -> str:
        material = _coerce(SM8Material, material)
        return await self._upsert(Material, material.uuid, entity_mapping.map_material(material))

    async def upsert_staff(self, staff: Union[SM8Staff, dict]) -> str:
        staff = _coerce(SM8Staff, staff)
        return await self._upsert(Staff, staff.uuid, entity_mapping.map_staff(staff))

    async def job_exists(self, job_uuid: str) -> bool:
        async with self._session_factory() as db:
            return await _load_by_uuid(db, Job, job_uuid) is not None

    async def soft_delete(self, model, sm8_uuid: str) -> bool:
        """Mark a row deleted upstream. Returns False if absent or already deleted."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(model)
                .where(model.sm8_uuid == sm8_uuid, model.deleted_at.is_(None))
                .values(deleted_at=datetime.now(timezone.utc))
            )
            await db.commit()
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Batch syncs
    # ------------------------------------------------------------------

    async def sync_companies(self) -> SyncStatus:
        response = await self.client.get_companies()
        status, _ = await self.sync_company_records(response["data"])
        await self._audit_sync("companies", None, status)
        return status

    async def sync_company_records(self, records: list) -> tuple[SyncStatus, list[str]]:
        status = SyncStatus(total_records=len(records))
        synced_uuids: list[str] = []
        for idx, raw in enumerate(records):
            try:
                company = SM8Company.model_validate(raw)
                await self.upsert_company(company)
                status.record_success()
                synced_uuids.append(company.uuid)
            except Exception as e:
                status.record_failure(f"Failed to sync company {_record_ref(raw, idx)}: {_describe(e)}")
        if status.failed_records:
            logger.warning(
                "Company sync: %d/%d failed", status.failed_records, status.total_records
            )
        return status, synced_uuids

    async def sync_jobs_for_company(
        self,
        company_uuid: str,
        options: Optional[RequestOptions] = None,
    ) -> SyncStatus:
        """Upsert every job for a company, cascading into children when asked."""
        response = await self.client.get_jobs(company_uuid, options)
        status = await self.sync_job_records(response["data"], options)
        await self._mark_company_synced(company_uuid, ok=status.failed_records == 0)
        await self._audit_sync("jobs", company_uuid, status)
        return status

    async def sync_job_records(
        self,
        records: list,
        options: Optional[RequestOptions] = None,
    ) -> SyncStatus:
        """Upsert already-fetched job snapshots (and their quotes)."""
        status = SyncStatus(total_records=len(records))
        for idx, raw in enumerate(records):
            try:
                job = SM8Job.model_validate(raw)
                await self.upsert_job(job)
                if job.has_quote:
                    await self.upsert_quote(job)
                await self._cascade(job, options)
                status.record_success()
            except RateLimitedError:
                raise
            except Exception as e:
                status.record_failure(f"Failed to sync job {_record_ref(raw, idx)}: {_describe(e)}")
        return status

    async def sync_quotes_for_company(
        self,
        company_uuid: str,
        options: Optional[RequestOptions] = None,
    ) -> SyncStatus:
        response = await self.client.get_quotes(company_uuid, options)
        status = SyncStatus(total_records=len(response["data"]))

        for idx, raw in enumerate(response["data"]):
            try:
                job = SM8Job.model_validate(raw)
                await self.upsert_job(job)
                await self.upsert_quote(job)
                status.record_success()
            except RateLimitedError:
                raise
            except Exception as e:
                status.record_failure(f"Failed to sync quote {_record_ref(raw, idx)}: {_describe(e)}")

        await self._audit_sync("quotes", company_uuid, status)
        return status

    async def _cascade(self, job: SM8Job, options: Optional[RequestOptions]) -> None:
        if options is None:
            return
        if options.include_activities:
            activities = job.activities
            if activities is None:
                activities = (await self.client.get_job_activities(job.uuid))["data"]
            await self.sync_job_activities(job.uuid, activities)
        if options.include_attachments:
            attachments = job.attachments
            if attachments is None:
                attachments = (await self.client.get_job_attachments(job.uuid))["data"]
            await self.sync_job_attachments(job.uuid, attachments)
        if options.include_materials:
            materials = job.materials
            if materials is None:
                materials = (await self.client.get_job_materials(job.uuid))["data"]
            await self.sync_job_materials(job.uuid, materials)

    async def sync_job_activities(self, job_uuid: str, activities: Iterable) -> SyncStatus:
        return await self._sync_children(
            job_uuid, activities, SM8JobActivity, self.upsert_job_activity, "activity"
        )

    async def sync_job_attachments(self, job_uuid: str, attachments: Iterable) -> SyncStatus:
        return await self._sync_children(
            job_uuid, attachments, SM8Attachment, self.upsert_attachment, "attachment"
        )

    async def sync_job_materials(self, job_uuid: str, materials: Iterable) -> SyncStatus:
        return await self._sync_children(
            job_uuid, materials, SM8Material, self.upsert_material, "material"
        )

    async def _sync_children(self, job_uuid, records, schema, upsert, label: str) -> SyncStatus:
        if not await self.job_exists(job_uuid):
            raise ValueError(f"Job {job_uuid} not found locally")

        records = list(records)
        status = SyncStatus(total_records=len(records))
        for idx, raw in enumerate(records):
            try:
                record = _coerce(schema, raw)
                if record.job_uuid != job_uuid:
                    raise ValueError(f"belongs to job {record.job_uuid}")
                await upsert(record)
                status.record_success()
            except Exception as e:
                status.record_failure(f"Failed to sync {label} {_record_ref(raw, idx)}: {_describe(e)}")
        return status

    async def sync_staff(self) -> SyncStatus:
        response = await self.client.get_staff()
        status = SyncStatus(total_records=len(response["data"]))
        for idx, raw in enumerate(response["data"]):
            try:
                await self.upsert_staff(raw)
                status.record_success()
            except Exception as e:
                status.record_failure(f"Failed to sync staff {_record_ref(raw, idx)}: {_describe(e)}")
        await self._audit_sync("staff", None, status)
        return status

    async def perform_full_sync(self) -> FullSyncResult:
        """
        Companies, then jobs and quotes per company. Cost is
        O(companies x jobs per company); run from workers, not requests.
        """
        result = FullSyncResult()
        response = await self.client.get_companies(fresh=True)
        result.companies, company_uuids = await self.sync_company_records(response["data"])

        for position, company_uuid in enumerate(company_uuids):
            try:
                result.jobs.merge(await self.sync_jobs_for_company(company_uuid))
                result.quotes.merge(await self.sync_quotes_for_company(company_uuid))
            except RateLimitedError as e:
                remaining = company_uuids[position:]
                result.skipped_companies = remaining
                for skipped in remaining:
                    result.jobs.total_records += 1
                    result.jobs.record_failure(
                        f"Skipped company {skipped}: rate limit exhausted (resets at {e.reset_at})"
                    )
                await self.flag_sync_pending(remaining)
                logger.warning(
                    "Full sync stopped by rate limit - %d companies deferred", len(remaining)
                )
                break
            except ServiceM8Error as e:
                result.jobs.total_records += 1
                result.jobs.record_failure(f"Failed to sync company {company_uuid}: {_describe(e)}")
                await self.flag_sync_pending([company_uuid])

        async with self._session_factory() as db:
            await record_audit(
                db,
                "full_sync_completed",
                status="success" if result.error_count == 0 else "failure",
                data=result.model_dump(mode="json"),
            )
            await db.commit()

        logger.info(
            "Full sync finished: companies=%d jobs=%d quotes=%d errors=%d skipped=%d",
            result.companies.synced_records,
            result.jobs.synced_records,
            result.quotes.synced_records,
            result.error_count,
            len(result.skipped_companies),
        )
        return result

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def flag_sync_pending(self, company_uuids: list[str]) -> None:
        if not company_uuids:
            return
        async with self._session_factory() as db:
            await db.execute(
                update(Company)
                .where(Company.sm8_uuid.in_(company_uuids))
                .values(sync_pending=True)
            )
            await db.commit()

    async def pending_company_uuids(self) -> list[str]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Company.sm8_uuid)
                .where(Company.sync_pending.is_(True), Company.deleted_at.is_(None))
                .order_by(Company.last_synced_at)
            )
            return list(result.scalars().all())

    async def _mark_company_synced(self, company_uuid: str, ok: bool) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(Company)
                .where(Company.sm8_uuid == company_uuid)
                .values(last_synced_at=datetime.now(timezone.utc), sync_pending=not ok)
            )
            await db.commit()

    async def _audit_sync(self, scope: str, company_uuid: Optional[str], status: SyncStatus) -> None:
        async with self._session_factory() as db:
            await record_audit(
                db,
                "sync_completed",
                status="success" if status.failed_records == 0 else "failure",
                target_type="company" if company_uuid else None,
                target_id=company_uuid,
                message=f"{scope}: {status.synced_records}/{status.total_records} synced",
                error_message=status.errors[-1] if status.errors else None,
                data={"scope": scope, "sync_status": status.model_dump(mode="json")},
            )
            await db.commit()

    async def get_sync_status(self, company_uuid: str) -> CompanySyncStatus:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AuditLog)
                .where(
                    AuditLog.action == "sync_completed",
                    AuditLog.target_id == company_uuid,
                )
                .order_by(AuditLog.created_at.desc())
                .limit(1)
            )
            latest = result.scalar_one_or_none()

            jobs = await db.scalar(
                select(func.count(Job.id)).where(
                    Job.company_uuid == company_uuid, Job.deleted_at.is_(None)
                )
            )
            quotes = await db.scalar(
                select(func.count(Quote.id))
                .join(Job, Quote.job_id == Job.id)
                .where(Job.company_uuid == company_uuid)
            )
            company = await _load_by_uuid(db, Company, company_uuid)

        status = None
        if latest and latest.data and "sync_status" in latest.data:
            status = SyncStatus.model_validate(latest.data["sync_status"])
        last_sync = company.last_synced_at if company else None
        return CompanySyncStatus(
            company_uuid=company_uuid,
            last_sync=entity_mapping.as_utc(last_sync) if last_sync else (status.last_sync if status else None),
            status=status,
            local_jobs=jobs or 0,
            local_quotes=quotes or 0,
            sync_pending=bool(company and company.sync_pending),
            last_error=latest.error_message if latest else None,
        )


async def _load_by_uuid(db: AsyncSession, model, sm8_uuid: str):
    result = await db.execute(select(model).where(model.sm8_uuid == sm8_uuid))
    return result.scalar_one_or_none()


def _coerce(schema: type[BaseModel], value):
    if isinstance(value, schema):
        return value
    if isinstance(value, BaseModel):
        return schema.model_validate(value.model_dump())
    return schema.model_validate(value)


def _record_ref(raw: Any, idx: int) -> str:
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if isinstance(raw, dict) and raw.get("uuid"):
        return str(raw["uuid"])
    return f"#{idx}"


def _describe(error: Exception) -> str:
    if isinstance(error, PayloadValidationError):
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in error.errors()})
        return f"invalid payload ({', '.join(fields)})"
    if isinstance(error, ServiceM8Error):
        return error.message
    return str(error)
