"""
API request and response schemas for the webhook, sync, management and
reconciliation endpoints.
"""
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field

from fieldsync.schemas.servicem8 import RequestOptions


class WebhookAcceptedResponse(BaseModel):
    success: bool = True
    message: str
    eventId: str


class SyncAction:
    SYNC_COMPANIES = "sync_companies"
    SYNC_JOBS = "sync_jobs"
    SYNC_QUOTES = "sync_quotes"
    FULL_SYNC = "full_sync"
    GET_SYNC_STATUS = "get_sync_status"

    ALL = (SYNC_COMPANIES, SYNC_JOBS, SYNC_QUOTES, FULL_SYNC, GET_SYNC_STATUS)
    NEEDS_COMPANY = (SYNC_JOBS, SYNC_QUOTES, GET_SYNC_STATUS)


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str
    company_uuid: Optional[str] = Field(default=None, alias="companyUuid")
    options: Optional[RequestOptions] = None


class SyncResponse(BaseModel):
    success: bool
    data: Any = None
    message: str


class ReconciliationRequest(BaseModel):
    type: Optional[str] = None


class ReconciliationResponse(BaseModel):
    success: bool
    result: dict


class RetryEventsRequest(BaseModel):
    event_ids: list[str] = Field(min_length=1, max_length=500)


class DeleteOldEventsRequest(BaseModel):
    days: int = Field(default=30, ge=1)


class QuoteApproveRequest(BaseModel):
    job_uuid: str = Field(min_length=1)
    line_items: Optional[list[str]] = None
    notes: Optional[str] = None


class QuoteRejectRequest(BaseModel):
    job_uuid: str = Field(min_length=1)
    reason: Optional[str] = None


class CompanyCreateRequest(BaseModel):
    """New ServiceM8 client. Fields beyond these are passed through as-is."""
    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class JobCreateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    company_uuid: str = Field(min_length=1)
    status: str = "Quote"
    job_address: Optional[str] = None
    job_description: Optional[str] = None
