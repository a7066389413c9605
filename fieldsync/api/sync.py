"""
Sync trigger API - action-dispatched POST.

Actions: sync_companies, sync_jobs, sync_quotes, full_sync, get_sync_status.
sync_jobs, sync_quotes and get_sync_status need companyUuid.

full_sync is expensive (every company, every job); it is offered here for
operators but scheduled runs go through reconciliation.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from fieldsync.api.deps import get_sync_service, require_admin_key
from fieldsync.integrations.errors import AuthError, RateLimitedError, ServiceM8Error
from fieldsync.schemas.api_responses import SyncAction, SyncRequest, SyncResponse

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/sync",
    tags=["sync"],
    dependencies=[Depends(require_admin_key)],
)


@router.post("", response_model=SyncResponse)
async def sync_action(body: SyncRequest, sync=Depends(get_sync_service)):
    if body.action not in SyncAction.ALL:
        raise HTTPException(status_code=400, detail=f"Invalid action: {body.action}")
    if body.action in SyncAction.NEEDS_COMPANY and not body.company_uuid:
        raise HTTPException(status_code=400, detail=f"companyUuid is required for {body.action}")

    try:
        if body.action == SyncAction.SYNC_COMPANIES:
            status = await sync.sync_companies()
            return _status_response(status, "Companies")

        if body.action == SyncAction.SYNC_JOBS:
            status = await sync.sync_jobs_for_company(body.company_uuid, body.options)
            return _status_response(status, "Jobs")

        if body.action == SyncAction.SYNC_QUOTES:
            status = await sync.sync_quotes_for_company(body.company_uuid, body.options)
            return _status_response(status, "Quotes")

        if body.action == SyncAction.FULL_SYNC:
            result = await sync.perform_full_sync()
            return SyncResponse(
                success=result.error_count == 0,
                data=result.model_dump(mode="json"),
                message=(
                    f"Full sync: {result.records_processed} records synced, "
                    f"{result.error_count} errors"
                ),
            )

        status = await sync.get_sync_status(body.company_uuid)
        return SyncResponse(
            success=True,
            data=status.model_dump(mode="json"),
            message="Sync status retrieved",
        )
    except AuthError as e:
        logger.error("Sync %s failed - ServiceM8 auth: %s", body.action, e.message)
        raise HTTPException(status_code=502, detail=f"ServiceM8 authentication failed: {e.message}")
    except RateLimitedError as e:
        raise HTTPException(
            status_code=429,
            detail=f"ServiceM8 rate limit exhausted until {e.reset_at}",
        )
    except ServiceM8Error as e:
        logger.warning("Sync %s failed: %s", body.action, e.message)
        raise HTTPException(status_code=502, detail=f"ServiceM8 request failed: {e.message}")


def _status_response(status, label: str) -> SyncResponse:
    return SyncResponse(
        success=status.failed_records == 0,
        data=status.model_dump(mode="json"),
        message=(
            f"{label}: {status.synced_records}/{status.total_records} synced"
            + (f", {status.failed_records} failed" if status.failed_records else "")
        ),
    )
