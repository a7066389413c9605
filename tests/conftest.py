"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test (services open several sessions)
and mocks every external service: ServiceM8, Redis and the alert webhook.
"""
import copy
import time

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from fieldsync.database import Base
from fieldsync.integrations.errors import NotFoundError, RateLimitedError
import fieldsync.models  # noqa: F401


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Drop-in for fieldsync.database.async_session_factory."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.ping = AsyncMock(return_value=True)
    redis_mock.publish = AsyncMock(return_value=1)
    redis_mock.lpush = AsyncMock(return_value=1)
    redis_mock.ltrim = AsyncMock(return_value=True)
    redis_mock.lrange = AsyncMock(return_value=[])
    getter = AsyncMock(return_value=redis_mock)
    with (
        patch("fieldsync.utils.redis.get_redis", getter),
        patch("fieldsync.services.realtime.get_redis", getter),
        patch("fieldsync.api.health.get_redis", getter),
    ):
        yield redis_mock


class FakeServiceM8Client:
    """
    In-memory stand-in for ServiceM8Client with the same public surface.
    Records are raw ServiceM8 dicts keyed by uuid.
    """

    def __init__(self):
        self.companies: dict[str, dict] = {}
        self.jobs: dict[str, dict] = {}
        self.activities: dict[str, dict] = {}
        self.attachments: dict[str, dict] = {}
        self.materials: dict[str, dict] = {}
        self.staff: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.invalidated: list[str] = []
        self.rate_limit_after: int | None = None
        self.fail_on: dict[str, Exception] = {}
        self.connected = True

    # -- helpers -------------------------------------------------------

    def add_company(self, uuid: str, **fields) -> dict:
        record = {"uuid": uuid, "name": f"Company {uuid}", "is_active": 1, **fields}
        self.companies[uuid] = record
        return record

    def add_job(self, uuid: str, company_uuid: str, **fields) -> dict:
        record = {
            "uuid": uuid,
            "company_uuid": company_uuid,
            "status": "Work Order",
            "job_description": f"Job {uuid}",
            **fields,
        }
        self.jobs[uuid] = record
        return record

    def _call(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise self.fail_on[name]
        if self.rate_limit_after is not None:
            if self.rate_limit_after <= 0:
                raise RateLimitedError("Rate limit exhausted", reset_at=time.time() + 60)
            self.rate_limit_after -= 1

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    @staticmethod
    def _list(records) -> dict:
        data = [copy.deepcopy(r) for r in records]
        return {"data": data, "meta": {"count": len(data)}}

    @staticmethod
    def _one(store: dict, uuid: str) -> dict:
        if uuid not in store:
            raise NotFoundError(f"{uuid} not found", status_code=404)
        return copy.deepcopy(store[uuid])

    # -- client surface ------------------------------------------------

    async def get_companies(self, options=None, fresh=False):
        self._call("get_companies", options)
        return self._list(self.companies.values())

    async def get_company(self, company_uuid):
        self._call("get_company", company_uuid)
        return self._one(self.companies, company_uuid)

    async def get_jobs(self, company_uuid=None, options=None, fresh=False):
        self._call("get_jobs", company_uuid, options)
        jobs = [
            j for j in self.jobs.values()
            if company_uuid is None or j.get("company_uuid") == company_uuid
        ]
        if options is not None and options.status:
            jobs = [j for j in jobs if j.get("status") in options.status]
        if options is not None and options.modified_since:
            jobs = [j for j in jobs if (j.get("edit_date") or "") > options.modified_since]
        return self._list(jobs)

    async def get_quotes(self, company_uuid, options=None, fresh=False):
        self._call("get_quotes", company_uuid)
        jobs = [
            j for j in self.jobs.values()
            if j.get("company_uuid") == company_uuid and j.get("status") == "Quote"
        ]
        return self._list(jobs)

    async def get_job(self, job_uuid):
        self._call("get_job", job_uuid)
        return self._one(self.jobs, job_uuid)

    async def get_job_activities(self, job_uuid, fresh=False):
        self._call("get_job_activities", job_uuid)
        return self._list(a for a in self.activities.values() if a["job_uuid"] == job_uuid)

    async def get_job_activity(self, activity_uuid):
        self._call("get_job_activity", activity_uuid)
        return self._one(self.activities, activity_uuid)

    async def get_job_attachments(self, job_uuid, fresh=False):
        self._call("get_job_attachments", job_uuid)
        return self._list(a for a in self.attachments.values() if a["job_uuid"] == job_uuid)

    async def get_attachment(self, attachment_uuid):
        self._call("get_attachment", attachment_uuid)
        return self._one(self.attachments, attachment_uuid)

    async def get_job_materials(self, job_uuid, fresh=False):
        self._call("get_job_materials", job_uuid)
        return self._list(m for m in self.materials.values() if m["job_uuid"] == job_uuid)

    async def get_staff(self, fresh=False):
        self._call("get_staff")
        return self._list(s for s in self.staff.values() if s.get("is_active", 1) == 1)

    async def create_company(self, payload):
        self._call("create_company", payload)
        fields = {k: v for k, v in payload.items() if k != "uuid"}
        record = self.add_company(payload.get("uuid") or f"co-new-{len(self.companies) + 1}", **fields)
        return {"errorCode": 0, "message": "OK", "uuid": record["uuid"]}

    async def create_job(self, payload):
        self._call("create_job", payload)
        fields = {k: v for k, v in payload.items() if k != "uuid"}
        record = self.add_job(payload.get("uuid") or f"job-new-{len(self.jobs) + 1}", **fields)
        return {"errorCode": 0, "message": "OK", "uuid": record["uuid"]}

    async def get_service_agreements(self, company_uuid):
        self._call("get_service_agreements", company_uuid)
        return self._list([])

    async def get_recurring_jobs(self, company_uuid):
        self._call("get_recurring_jobs", company_uuid)
        return self._list([])

    async def approve_quote(self, job_uuid, line_items=None, notes=None):
        self._call("approve_quote", job_uuid)
        job = self.jobs[job_uuid]
        job.update({"status": "Work Order", "quote_approved": 1, "quote_approved_date": "2026-10-01 09:00:00"})
        return copy.deepcopy(job)

    async def reject_quote(self, job_uuid, reason=None):
        self._call("reject_quote", job_uuid)
        job = self.jobs[job_uuid]
        job.update({"status": "Quote", "quote_approved": 0, "quote_rejection_reason": reason})
        return copy.deepcopy(job)

    def invalidate(self, entity: str) -> int:
        self.invalidated.append(entity)
        return 0

    async def test_connection(self) -> bool:
        return self.connected

    def get_api_stats(self) -> dict:
        return {
            "rate_limit": {"limit": 1000, "remaining": 900, "reset_at": None},
            "cache": {"size": 0, "hits": 0, "misses": 0, "hit_rate": 0.0},
            "requests": len(self.calls),
            "errors": 0,
        }

    async def aclose(self) -> None:
        pass


class RecordingBroadcaster:
    def __init__(self, fail: bool = False):
        self.messages: list[tuple[str, str, dict]] = []
        self.fail = fail

    async def broadcast(self, channel: str, event: str, payload: dict) -> None:
        if self.fail:
            raise ConnectionError("redis down")
        self.messages.append((channel, event, payload))


@pytest.fixture
def fake_client():
    return FakeServiceM8Client()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def sync_service(fake_client, session_factory):
    from fieldsync.services.sync import SyncService
    return SyncService(fake_client, session_factory=session_factory)


@pytest.fixture
def processor(fake_client, sync_service, broadcaster, session_factory):
    from fieldsync.services.webhook_processor import WebhookProcessor
    return WebhookProcessor(
        fake_client,
        sync_service,
        broadcaster=broadcaster,
        session_factory=session_factory,
        max_attempts=3,
    )


@pytest.fixture
def mock_alerts():
    """Capture alerts without touching Redis cooldowns or the webhook."""
    with (
        patch("fieldsync.services.webhook_processor.send_alert", new_callable=AsyncMock) as processor_alert,
        patch("fieldsync.services.reconciliation.send_alert", new_callable=AsyncMock) as reconciliation_alert,
    ):
        yield {"processor": processor_alert, "reconciliation": reconciliation_alert}


@pytest.fixture
def failing_broadcaster():
    return RecordingBroadcaster(fail=True)
