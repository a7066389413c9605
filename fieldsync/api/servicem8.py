"""
ServiceM8 data API - connection test, client and job listing and creation,
and quote decisions.

Quote approve/reject write to ServiceM8 first, then re-fetch the job and
upsert it locally so the local quote reflects the decision immediately.
Created clients and jobs are pulled back and upserted the same way.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fieldsync.api.deps import get_client, get_sync_service, require_admin_key
from fieldsync.integrations.errors import (
    AuthError,
    NotFoundError,
    RateLimitedError,
    ServiceM8Error,
)
from fieldsync.schemas.api_responses import (
    CompanyCreateRequest,
    JobCreateRequest,
    QuoteApproveRequest,
    QuoteRejectRequest,
)
from fieldsync.schemas.servicem8 import RequestOptions, SM8Job

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/servicem8",
    tags=["servicem8"],
    dependencies=[Depends(require_admin_key)],
)


def _http_error(e: ServiceM8Error) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, RateLimitedError):
        return HTTPException(status_code=429, detail=f"Rate limited until {e.reset_at}")
    if isinstance(e, AuthError):
        return HTTPException(status_code=502, detail=f"ServiceM8 authentication failed: {e.message}")
    return HTTPException(status_code=502, detail=e.message)


@router.get("/test-connection")
async def test_connection(client=Depends(get_client)):
    connected = await client.test_connection()
    return {
        "success": connected,
        "connected": connected,
        "stats": client.get_api_stats(),
    }


@router.get("/clients")
async def list_clients(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    offset: Optional[int] = Query(None, ge=0),
    fresh: bool = Query(False),
    client=Depends(get_client),
):
    options = RequestOptions(limit=limit, offset=offset)
    try:
        return {"success": True, **await client.get_companies(options, fresh=fresh)}
    except ServiceM8Error as e:
        raise _http_error(e)


@router.post("/clients")
async def create_client(
    body: CompanyCreateRequest,
    client=Depends(get_client),
    sync=Depends(get_sync_service),
):
    try:
        created = await client.create_company(body.model_dump(exclude_none=True))
        raw = await client.get_company(created["uuid"])
        await sync.upsert_company(raw)
    except ServiceM8Error as e:
        raise _http_error(e)
    logger.info("Client %s created", created["uuid"][:8])
    return {"success": True, "data": raw, "message": "Client created"}


@router.get("/clients/{company_uuid}/service-agreements")
async def list_service_agreements(company_uuid: str, client=Depends(get_client)):
    try:
        return {"success": True, **await client.get_service_agreements(company_uuid)}
    except ServiceM8Error as e:
        raise _http_error(e)


@router.get("/clients/{company_uuid}/recurring-jobs")
async def list_recurring_jobs(company_uuid: str, client=Depends(get_client)):
    try:
        return {"success": True, **await client.get_recurring_jobs(company_uuid)}
    except ServiceM8Error as e:
        raise _http_error(e)


@router.get("/jobs")
async def list_jobs(
    company_uuid: Optional[str] = Query(None),
    status: Optional[list[str]] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    offset: Optional[int] = Query(None, ge=0),
    fresh: bool = Query(False),
    client=Depends(get_client),
):
    options = RequestOptions(status=status, limit=limit, offset=offset)
    try:
        return {"success": True, **await client.get_jobs(company_uuid, options, fresh=fresh)}
    except ServiceM8Error as e:
        raise _http_error(e)


@router.post("/jobs")
async def create_job(
    body: JobCreateRequest,
    client=Depends(get_client),
    sync=Depends(get_sync_service),
):
    try:
        created = await client.create_job(body.model_dump(exclude_none=True))
        job = await _resync_job(client, sync, created["uuid"])
    except ServiceM8Error as e:
        raise _http_error(e)
    logger.info("Job %s created for client %s", created["uuid"][:8], body.company_uuid[:8])
    return {"success": True, "data": job, "message": "Job created"}


@router.post("/quotes/approve")
async def approve_quote(
    body: QuoteApproveRequest,
    client=Depends(get_client),
    sync=Depends(get_sync_service),
):
    try:
        await client.approve_quote(body.job_uuid, body.line_items, body.notes)
        job = await _resync_job(client, sync, body.job_uuid)
    except ServiceM8Error as e:
        raise _http_error(e)
    logger.info("Quote approved for job %s", body.job_uuid[:8])
    return {"success": True, "data": job, "message": "Quote approved"}


@router.post("/quotes/reject")
async def reject_quote(
    body: QuoteRejectRequest,
    client=Depends(get_client),
    sync=Depends(get_sync_service),
):
    try:
        await client.reject_quote(body.job_uuid, body.reason)
        job = await _resync_job(client, sync, body.job_uuid)
    except ServiceM8Error as e:
        raise _http_error(e)
    logger.info("Quote rejected for job %s", body.job_uuid[:8])
    return {"success": True, "data": job, "message": "Quote rejected"}


async def _resync_job(client, sync, job_uuid: str) -> dict:
    raw = await client.get_job(job_uuid)
    job = SM8Job.model_validate(raw)
    await sync.upsert_job(job)
    if job.has_quote:
        await sync.upsert_quote(job)
    return raw
