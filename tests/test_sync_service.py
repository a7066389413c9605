"""
Tests for fieldsync/services/sync.py - upserts, batch syncs, full sync.
"""
from sqlalchemy import select

import pytest

from fieldsync.models.audit_log import AuditLog
from fieldsync.models.company import Company
from fieldsync.models.job import Job
from fieldsync.models.job_activity import JobActivity
from fieldsync.models.material import Material
from fieldsync.models.quote import Quote
from fieldsync.models.staff import Staff
from fieldsync.schemas.servicem8 import RequestOptions
from fieldsync.services.sync import UpsertResult


async def _get(session_factory, model, sm8_uuid):
    async with session_factory() as db:
        result = await db.execute(select(model).where(model.sm8_uuid == sm8_uuid))
        return result.scalar_one_or_none()


async def _count(session_factory, model):
    async with session_factory() as db:
        result = await db.execute(select(model))
        return len(result.scalars().all())


# ---------------------------------------------------------------------------
# Upsert semantics
# ---------------------------------------------------------------------------


class TestUpsertCompany:
    async def test_inserts_new_company(self, sync_service, session_factory):
        result = await sync_service.upsert_company({"uuid": "c-1", "name": "Acme Plumbing", "is_active": 1})

        assert result == UpsertResult.CREATED
        row = await _get(session_factory, Company, "c-1")
        assert row.name == "Acme Plumbing"
        assert row.is_active is True

    async def test_same_snapshot_twice_leaves_row_unchanged(self, sync_service, session_factory):
        snapshot = {"uuid": "c-1", "name": "Acme Plumbing", "email": "ops@acme.test", "is_active": 1}
        await sync_service.upsert_company(snapshot)
        first = await _get(session_factory, Company, "c-1")

        result = await sync_service.upsert_company(dict(snapshot))

        second = await _get(session_factory, Company, "c-1")
        assert result == UpsertResult.UNCHANGED
        assert second.updated_at == first.updated_at
        assert second.email == "ops@acme.test"

    async def test_changed_field_updates_row(self, sync_service, session_factory):
        await sync_service.upsert_company({"uuid": "c-1", "name": "Acme", "is_active": 1})
        first = await _get(session_factory, Company, "c-1")

        result = await sync_service.upsert_company({"uuid": "c-1", "name": "Acme Ltd", "is_active": 1})

        second = await _get(session_factory, Company, "c-1")
        assert result == UpsertResult.UPDATED
        assert second.name == "Acme Ltd"
        assert second.updated_at >= first.updated_at

    async def test_phone_falls_back_to_mobile(self, sync_service, session_factory):
        await sync_service.upsert_company({"uuid": "c-1", "name": "Acme", "mobile": "0400 000 000"})
        row = await _get(session_factory, Company, "c-1")
        assert row.phone == "0400 000 000"

    async def test_reupsert_clears_soft_delete(self, sync_service, session_factory):
        await sync_service.upsert_company({"uuid": "c-1", "name": "Acme"})
        assert await sync_service.soft_delete(Company, "c-1") is True

        result = await sync_service.upsert_company({"uuid": "c-1", "name": "Acme"})

        row = await _get(session_factory, Company, "c-1")
        assert result == UpsertResult.UPDATED
        assert row.deleted_at is None

    async def test_soft_delete_missing_row_returns_false(self, sync_service):
        assert await sync_service.soft_delete(Company, "nope") is False


class TestUpsertJobAndQuote:
    async def test_job_fields_are_mapped(self, sync_service, session_factory):
        await sync_service.upsert_job({
            "uuid": "j-1",
            "company_uuid": "c-1",
            "status": "Scheduled",
            "job_address": "1 Main St",
            "date": "2026-10-20 08:30:00",
            "quote_sent": 1,
        })

        row = await _get(session_factory, Job, "j-1")
        assert row.status == "Scheduled"
        assert row.address == "1 Main St"
        assert row.scheduled_date.year == 2026
        assert row.quote_sent is True

    async def test_empty_servicem8_date_maps_to_none(self, sync_service, session_factory):
        await sync_service.upsert_job({"uuid": "j-1", "company_uuid": "c-1", "date": "0000-00-00 00:00:00"})
        row = await _get(session_factory, Job, "j-1")
        assert row.scheduled_date is None

    async def test_job_upsert_is_idempotent_with_dates(self, sync_service, session_factory):
        snapshot = {"uuid": "j-1", "company_uuid": "c-1", "date": "2026-10-20 08:30:00"}
        await sync_service.upsert_job(snapshot)
        first = await _get(session_factory, Job, "j-1")

        assert await sync_service.upsert_job(dict(snapshot)) == UpsertResult.UNCHANGED
        second = await _get(session_factory, Job, "j-1")
        assert second.updated_at == first.updated_at

    async def test_quote_requires_local_job(self, sync_service):
        with pytest.raises(ValueError, match="not found locally"):
            await sync_service.upsert_quote({"uuid": "j-404", "status": "Quote"})

    async def test_quote_approval_state(self, sync_service, session_factory):
        job = {
            "uuid": "j-1",
            "company_uuid": "c-1",
            "status": "Work Order",
            "quote_total_amount": 450.0,
            "quote_approved": 1,
            "quote_approved_date": "2026-10-02 10:00:00",
            "quote_line_items": [{"description": "Hot water unit", "quantity": 1, "unit_price": 450, "total": 450}],
        }
        await sync_service.upsert_job(job)

        assert await sync_service.upsert_quote(job) == UpsertResult.CREATED

        async with session_factory() as db:
            quote = (await db.execute(select(Quote).where(Quote.job_uuid == "j-1"))).scalar_one()
        assert quote.status == "approved"
        assert quote.amount == 450.0
        assert quote.items[0]["description"] == "Hot water unit"
        assert quote.approved_at is not None

    async def test_rejected_quote_keeps_rejection_time_on_reapply(self, sync_service, session_factory):
        job = {"uuid": "j-1", "company_uuid": "c-1", "status": "Quote", "quote_rejection_reason": "Too expensive"}
        await sync_service.upsert_job(job)
        await sync_service.upsert_quote(job)

        assert await sync_service.upsert_quote(dict(job)) == UpsertResult.UNCHANGED
        async with session_factory() as db:
            quote = (await db.execute(select(Quote))).scalar_one()
        assert quote.status == "rejected"
        assert quote.rejection_reason == "Too expensive"


# ---------------------------------------------------------------------------
# Batch syncs
# ---------------------------------------------------------------------------


class TestPartialFailure:
    async def test_one_bad_job_yields_one_error(self, sync_service, session_factory):
        records = [
            {"uuid": f"j-{n}", "company_uuid": "c-1", "status": "Work Order"}
            for n in range(5)
        ]
        records[2]["date"] = "not a date"

        status = await sync_service.sync_job_records(records)

        assert status.total_records == 5
        assert status.synced_records == 4
        assert status.failed_records == 1
        assert len(status.errors) == 1
        assert "j-2" in status.errors[0]
        assert await _count(session_factory, Job) == 4
        assert await _get(session_factory, Job, "j-2") is None

    async def test_record_without_uuid_is_referenced_by_position(self, sync_service, session_factory):
        records = [{"uuid": "c-0", "name": "A"}, {"name": "no uuid"}, {"uuid": "c-2", "name": "C"}]

        status, synced = await sync_service.sync_company_records(records)

        assert status.failed_records == 1
        assert "#1" in status.errors[0]
        assert "invalid payload" in status.errors[0]
        assert synced == ["c-0", "c-2"]


class TestSyncJobsForCompany:
    async def test_syncs_jobs_and_marks_company(self, sync_service, fake_client, session_factory):
        fake_client.add_company("c-1")
        fake_client.add_job("j-1", "c-1")
        fake_client.add_job("j-2", "c-1", status="Quote", quote_total_amount=120.0)
        fake_client.add_job("j-9", "c-other")
        await sync_service.upsert_company(fake_client.companies["c-1"])

        status = await sync_service.sync_jobs_for_company("c-1")

        assert status.synced_records == 2
        assert await _count(session_factory, Job) == 2
        assert await _count(session_factory, Quote) == 1
        company = await _get(session_factory, Company, "c-1")
        assert company.last_synced_at is not None
        assert company.sync_pending is False

    async def test_writes_audit_row(self, sync_service, fake_client, session_factory):
        fake_client.add_job("j-1", "c-1")
        await sync_service.sync_jobs_for_company("c-1")

        async with session_factory() as db:
            logs = (await db.execute(select(AuditLog).where(AuditLog.action == "sync_completed"))).scalars().all()
        assert len(logs) == 1
        assert logs[0].target_id == "c-1"
        assert logs[0].data["scope"] == "jobs"
        assert logs[0].data["sync_status"]["synced_records"] == 1

    async def test_cascades_into_children(self, sync_service, fake_client, session_factory):
        fake_client.add_job("j-1", "c-1")
        fake_client.activities["a-1"] = {"uuid": "a-1", "job_uuid": "j-1", "activity_was_scheduled": 1}
        fake_client.materials["m-1"] = {"uuid": "m-1", "job_uuid": "j-1", "name": "Pipe", "quantity": 3}

        await sync_service.sync_jobs_for_company(
            "c-1", RequestOptions(include_activities=True, include_materials=True)
        )

        activity = await _get(session_factory, JobActivity, "a-1")
        material = await _get(session_factory, Material, "m-1")
        assert activity.activity_was_scheduled is True
        assert material.quantity == 3

    async def test_get_sync_status(self, sync_service, fake_client):
        fake_client.add_company("c-1")
        fake_client.add_job("j-1", "c-1", status="Quote")
        await sync_service.upsert_company(fake_client.companies["c-1"])
        await sync_service.sync_jobs_for_company("c-1")

        status = await sync_service.get_sync_status("c-1")

        assert status.company_uuid == "c-1"
        assert status.local_jobs == 1
        assert status.local_quotes == 1
        assert status.status.synced_records == 1
        assert status.last_sync is not None
        assert status.last_error is None


class TestChildren:
    async def test_children_need_local_job(self, sync_service):
        with pytest.raises(ValueError, match="not found locally"):
            await sync_service.sync_job_activities("j-404", [])

    async def test_child_for_other_job_is_rejected(self, sync_service):
        await sync_service.upsert_job({"uuid": "j-1", "company_uuid": "c-1"})

        status = await sync_service.sync_job_attachments(
            "j-1",
            [
                {"uuid": "att-1", "job_uuid": "j-1", "file_name": "photo.jpg"},
                {"uuid": "att-2", "job_uuid": "j-2", "file_name": "other.jpg"},
            ],
        )

        assert status.synced_records == 1
        assert status.failed_records == 1
        assert "att-2" in status.errors[0]


class TestSyncStaff:
    async def test_syncs_active_staff(self, sync_service, fake_client, session_factory):
        fake_client.staff["s-1"] = {"uuid": "s-1", "name": "Dana", "skills": ["gas"], "is_active": 1}
        fake_client.staff["s-2"] = {"uuid": "s-2", "name": "Former", "is_active": 0}

        status = await sync_service.sync_staff()

        assert status.synced_records == 1
        row = await _get(session_factory, Staff, "s-1")
        assert row.skills == ["gas"]


# ---------------------------------------------------------------------------
# Full sync
# ---------------------------------------------------------------------------


class TestPerformFullSync:
    async def test_syncs_everything(self, sync_service, fake_client, session_factory):
        for c in ("c-1", "c-2"):
            fake_client.add_company(c)
            fake_client.add_job(f"{c}-job", c)
            fake_client.add_job(f"{c}-quote", c, status="Quote")

        result = await sync_service.perform_full_sync()

        assert result.companies.synced_records == 2
        assert result.jobs.synced_records == 4
        assert result.quotes.synced_records == 2
        assert result.error_count == 0
        assert result.skipped_companies == []
        assert await _count(session_factory, Quote) == 2

    async def test_rate_limit_skips_remaining_companies(self, sync_service, fake_client, session_factory):
        for c in ("c-1", "c-2", "c-3"):
            fake_client.add_company(c)
            fake_client.add_job(f"{c}-job", c)
        # get_companies, then jobs + quotes for c-1; the next call is refused
        fake_client.rate_limit_after = 3

        result = await sync_service.perform_full_sync()

        assert result.companies.synced_records == 3
        assert result.skipped_companies == ["c-2", "c-3"]
        skipped_errors = [e for e in result.jobs.errors if e.startswith("Skipped company")]
        assert len(skipped_errors) == 2
        assert await _get(session_factory, Job, "c-1-job") is not None
        assert await _get(session_factory, Job, "c-2-job") is None
        assert (await _get(session_factory, Company, "c-2")).sync_pending is True
        assert (await _get(session_factory, Company, "c-3")).sync_pending is True
        assert await sync_service.pending_company_uuids() != []

    async def test_full_sync_writes_audit(self, sync_service, fake_client, session_factory):
        fake_client.add_company("c-1")
        await sync_service.perform_full_sync()

        async with session_factory() as db:
            log = (await db.execute(
                select(AuditLog).where(AuditLog.action == "full_sync_completed")
            )).scalar_one()
        assert log.status == "success"
        assert log.data["companies"]["synced_records"] == 1
