"""
Tests for fieldsync/api/sync.py and fieldsync/api/servicem8.py.
Endpoints are called directly with the in-memory ServiceM8 client.
"""
import time
from unittest.mock import AsyncMock

import pytest
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import select

from fieldsync.api.servicem8 import (
    approve_quote,
    create_client,
    create_job,
    list_clients,
    list_jobs,
    list_recurring_jobs,
    list_service_agreements,
    reject_quote,
)
from fieldsync.api.servicem8 import test_connection as check_connection
from fieldsync.api.sync import sync_action
from fieldsync.integrations.errors import AuthError, NotFoundError, RateLimitedError, TransientError
from fieldsync.models.company import Company
from fieldsync.models.job import Job
from fieldsync.models.quote import Quote
from fieldsync.schemas.api_responses import (
    CompanyCreateRequest,
    JobCreateRequest,
    QuoteApproveRequest,
    QuoteRejectRequest,
    SyncRequest,
)


def _request(action, company_uuid=None, **extra):
    body = {"action": action, **extra}
    if company_uuid:
        body["companyUuid"] = company_uuid
    return SyncRequest.model_validate(body)


class TestSyncActions:
    async def test_sync_companies(self, sync_service, fake_client):
        fake_client.add_company("c-1")
        fake_client.add_company("c-2")

        response = await sync_action(_request("sync_companies"), sync=sync_service)

        assert response.success is True
        assert response.data["synced_records"] == 2
        assert response.message == "Companies: 2/2 synced"

    async def test_sync_jobs_with_options(self, sync_service, fake_client):
        fake_client.add_job("j-1", "c-1", status="Completed")
        fake_client.add_job("j-2", "c-1", status="Scheduled")

        response = await sync_action(
            _request("sync_jobs", "c-1", options={"status": ["Completed"]}), sync=sync_service
        )

        assert response.data["synced_records"] == 1

    async def test_sync_quotes(self, sync_service, fake_client, session_factory):
        fake_client.add_job("j-1", "c-1", status="Quote", quote_total_amount=10.0)

        response = await sync_action(_request("sync_quotes", "c-1"), sync=sync_service)

        assert response.success is True
        async with session_factory() as db:
            assert len((await db.execute(select(Quote))).scalars().all()) == 1

    async def test_full_sync(self, sync_service, fake_client):
        fake_client.add_company("c-1")
        fake_client.add_job("j-1", "c-1")

        response = await sync_action(_request("full_sync"), sync=sync_service)

        assert response.success is True
        assert response.data["skipped_companies"] == []
        assert "records synced" in response.message

    async def test_get_sync_status(self, sync_service, fake_client):
        fake_client.add_company("c-1")
        fake_client.add_job("j-1", "c-1")
        await sync_service.sync_companies()
        await sync_service.sync_jobs_for_company("c-1")

        response = await sync_action(_request("get_sync_status", "c-1"), sync=sync_service)

        assert response.data["company_uuid"] == "c-1"
        assert response.data["local_jobs"] == 1

    async def test_partial_failure_reported(self, sync_service, fake_client):
        fake_client.add_job("j-1", "c-1")
        fake_client.jobs["bad"] = {"uuid": "", "company_uuid": "c-1"}

        response = await sync_action(_request("sync_jobs", "c-1"), sync=sync_service)

        assert response.success is False
        assert response.data["failed_records"] == 1
        assert "1 failed" in response.message

    @pytest.mark.parametrize("action", ["sync_jobs", "sync_quotes", "get_sync_status"])
    async def test_company_required(self, sync_service, action):
        with pytest.raises(HTTPException) as exc:
            await sync_action(_request(action), sync=sync_service)
        assert exc.value.status_code == 400

    async def test_invalid_action(self, sync_service):
        with pytest.raises(HTTPException) as exc:
            await sync_action(_request("sync_everything"), sync=sync_service)
        assert exc.value.status_code == 400

    @pytest.mark.parametrize("error,status", [
        (AuthError("bad key", status_code=401), 502),
        (RateLimitedError("slow down", reset_at=time.time() + 60), 429),
        (TransientError("gateway", status_code=502), 502),
    ])
    async def test_client_errors_mapped(self, sync_service, fake_client, error, status):
        fake_client.fail_on["get_companies"] = error
        with pytest.raises(HTTPException) as exc:
            await sync_action(_request("sync_companies"), sync=sync_service)
        assert exc.value.status_code == status


class TestServiceM8Endpoints:
    async def test_connection_reports_stats(self, fake_client):
        result = await check_connection(client=fake_client)
        assert result["connected"] is True
        assert "rate_limit" in result["stats"]

    async def test_list_jobs(self, fake_client):
        fake_client.add_job("j-1", "c-1", status="Quote")
        fake_client.add_job("j-2", "c-1")

        result = await list_jobs(
            company_uuid="c-1", status=["Quote"], limit=None, offset=None, fresh=False, client=fake_client
        )

        assert [j["uuid"] for j in result["data"]] == ["j-1"]

    async def test_list_jobs_rate_limited(self, fake_client):
        fake_client.fail_on["get_jobs"] = RateLimitedError("slow", reset_at=123.0)
        with pytest.raises(HTTPException) as exc:
            await list_jobs(company_uuid=None, status=None, limit=None, offset=None, fresh=False, client=fake_client)
        assert exc.value.status_code == 429

    async def test_approve_updates_local_quote(self, fake_client, sync_service, session_factory):
        fake_client.add_job("j-1", "c-1", status="Quote", quote_total_amount=80.0)

        result = await approve_quote(
            QuoteApproveRequest(job_uuid="j-1", notes="Go"), client=fake_client, sync=sync_service
        )

        assert result["success"] is True
        async with session_factory() as db:
            quote = (await db.execute(select(Quote))).scalar_one()
        assert quote.status == "approved"

    async def test_reject_records_reason(self, fake_client, sync_service, session_factory):
        fake_client.add_job("j-1", "c-1", status="Quote", quote_total_amount=80.0)

        await reject_quote(
            QuoteRejectRequest(job_uuid="j-1", reason="Too expensive"), client=fake_client, sync=sync_service
        )

        async with session_factory() as db:
            quote = (await db.execute(select(Quote))).scalar_one()
        assert quote.status == "rejected"
        assert quote.rejection_reason == "Too expensive"
        assert quote.rejected_at is not None

    async def test_approve_unknown_job(self, fake_client, sync_service):
        fake_client.approve_quote = AsyncMock(side_effect=NotFoundError("no job", status_code=404))
        with pytest.raises(HTTPException) as exc:
            await approve_quote(QuoteApproveRequest(job_uuid="j-404"), client=fake_client, sync=sync_service)
        assert exc.value.status_code == 404

    def test_job_uuid_required(self):
        with pytest.raises(ValidationError):
            QuoteApproveRequest(job_uuid="")


class TestClientEndpoints:
    async def test_list_clients(self, fake_client):
        fake_client.add_company("c-1", name="Acme Plumbing")

        result = await list_clients(limit=None, offset=None, fresh=True, client=fake_client)

        assert result["success"] is True
        assert [c["name"] for c in result["data"]] == ["Acme Plumbing"]

    async def test_create_client_upserts_locally(self, fake_client, sync_service, session_factory):
        body = CompanyCreateRequest(name="Acme Plumbing", email="ops@acme.test", abn="123")

        result = await create_client(body, client=fake_client, sync=sync_service)

        assert result["success"] is True
        created = fake_client.calls[0]
        assert created[0] == "create_company"
        assert created[1]["abn"] == "123"
        assert "phone" not in created[1]
        async with session_factory() as db:
            company = (await db.execute(select(Company))).scalar_one()
        assert company.sm8_uuid == result["data"]["uuid"]
        assert company.email == "ops@acme.test"

    async def test_create_client_rejected_upstream(self, fake_client, sync_service, session_factory):
        fake_client.fail_on["create_company"] = AuthError("bad key", status_code=401)

        with pytest.raises(HTTPException) as exc:
            await create_client(CompanyCreateRequest(name="Acme"), client=fake_client, sync=sync_service)

        assert exc.value.status_code == 502
        async with session_factory() as db:
            assert (await db.execute(select(Company))).first() is None

    def test_client_name_required(self):
        with pytest.raises(ValidationError):
            CompanyCreateRequest(name="")

    async def test_service_agreements_and_recurring_jobs(self, fake_client):
        agreements = await list_service_agreements("c-1", client=fake_client)
        recurring = await list_recurring_jobs("c-1", client=fake_client)

        assert agreements["success"] is True and recurring["success"] is True
        assert fake_client.calls == [("get_service_agreements", "c-1"), ("get_recurring_jobs", "c-1")]


class TestJobCreate:
    async def test_create_job_defaults_to_quote(self, fake_client, sync_service, session_factory):
        body = JobCreateRequest(company_uuid="c-1", job_description="Replace hot water unit")

        result = await create_job(body, client=fake_client, sync=sync_service)

        assert result["data"]["status"] == "Quote"
        async with session_factory() as db:
            job = (await db.execute(select(Job))).scalar_one()
        assert job.sm8_uuid == result["data"]["uuid"]
        assert job.company_uuid == "c-1"
        assert job.description == "Replace hot water unit"

    async def test_create_job_rate_limited(self, fake_client, sync_service):
        fake_client.fail_on["create_job"] = RateLimitedError("slow", reset_at=time.time() + 60)
        with pytest.raises(HTTPException) as exc:
            await create_job(JobCreateRequest(company_uuid="c-1"), client=fake_client, sync=sync_service)
        assert exc.value.status_code == 429

    def test_company_uuid_required(self):
        with pytest.raises(ValidationError):
            JobCreateRequest(company_uuid="")
