"""
ServiceM8 payload schemas - external entity snapshots, webhook envelopes,
and request options for list queries.

ServiceM8 encodes booleans as 0/1 and timestamps as strings; those are kept
as-is here and converted in services/entity_mapping.py.
"""
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


JOB_STATUSES = (
    "Quote",
    "Work Order",
    "Scheduled",
    "In Progress",
    "Completed",
    "Cancelled",
    "Emergency",
    "On Hold",
)

WEBHOOK_EVENT_TYPES = (
    "created",
    "updated",
    "deleted",
    "status_changed",
    "attachment_added",
)


class _SM8Model(BaseModel):
    """ServiceM8 adds fields over time; keep unknown ones instead of failing."""
    model_config = ConfigDict(extra="allow")


class SM8Company(_SM8Model):
    uuid: str = Field(min_length=1)
    name: str = ""
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    website: Optional[str] = None
    notes: Optional[str] = None
    is_active: int = 1
    edit_date: Optional[str] = None


class SM8QuoteLineItem(_SM8Model):
    id: Optional[str] = None
    description: str = ""
    quantity: float = 0
    unit_price: float = 0
    total: float = 0
    category: Optional[str] = None


class SM8JobActivity(_SM8Model):
    uuid: str = Field(min_length=1)
    job_uuid: str = Field(min_length=1)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    staff_uuid: Optional[str] = None
    activity_was_scheduled: int = 0
    activity_type: Optional[str] = None
    notes: Optional[str] = None


class SM8Attachment(_SM8Model):
    uuid: str = Field(min_length=1)
    job_uuid: str = Field(min_length=1)
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    category: Optional[str] = None
    description: Optional[str] = None
    uploaded_by: Optional[str] = None
    upload_date: Optional[str] = None
    download_url: Optional[str] = None


class SM8Material(_SM8Model):
    uuid: str = Field(min_length=1)
    job_uuid: str = Field(min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[float] = None
    unit_cost: Optional[float] = None
    total_cost: Optional[float] = None
    category: Optional[str] = None


class SM8Staff(_SM8Model):
    uuid: str = Field(min_length=1)
    name: str = ""
    mobile: Optional[str] = None
    email: Optional[str] = None
    is_active: int = 1
    staff_type: Optional[str] = None
    skills: Optional[list[str]] = None


class SM8Job(_SM8Model):
    uuid: str = Field(min_length=1)
    company_uuid: Optional[str] = None
    status: str = "Quote"
    job_address: Optional[str] = None
    job_description: Optional[str] = None
    date: Optional[str] = None
    generated_job_id: Optional[str] = None
    job_priority: Optional[str] = None
    staff_assigned: Optional[str] = None
    quote_sent: int = 0
    job_is_quoted: int = 0
    quote_date: Optional[str] = None
    quote_total_amount: Optional[float] = None
    quote_approved: Optional[int] = None
    quote_approved_date: Optional[str] = None
    quote_rejection_reason: Optional[str] = None
    quote_line_items: Optional[list[SM8QuoteLineItem]] = None
    edit_date: Optional[str] = None

    # Present when requested with $expand
    activities: Optional[list[SM8JobActivity]] = None
    attachments: Optional[list[SM8Attachment]] = None
    materials: Optional[list[SM8Material]] = None

    @property
    def has_quote(self) -> bool:
        return bool(
            self.job_is_quoted
            or self.quote_sent
            or self.status == "Quote"
            or self.quote_total_amount is not None
        )


class WebhookObjectType(str, Enum):
    """Entity types ServiceM8 sends change notifications for."""
    JOB = "Job"
    COMPANY = "Company"
    JOB_ACTIVITY = "JobActivity"
    ATTACHMENT = "Attachment"
    STAFF = "Staff"


class WebhookRelatedObjects(_SM8Model):
    staff_assigned: Optional[str] = None
    materials_updated: bool = False
    activities_modified: bool = False
    attachments_added: list[str] = Field(default_factory=list)
    activities_added: list[str] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """Change notification - not a snapshot; handlers re-fetch current state."""
    object_type: WebhookObjectType
    object_uuid: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    timestamp: Optional[str] = None
    changes: Optional[dict[str, Any]] = None
    related_objects: Optional[WebhookRelatedObjects] = None


class RequestOptions(BaseModel):
    """Filters and expansions for job/quote list queries."""
    include_activities: bool = False
    include_attachments: bool = False
    include_materials: bool = False
    include_staff: bool = False
    status: Optional[list[str]] = None
    staff_assigned: Optional[list[str]] = None
    date_start: Optional[str] = None
    date_end: Optional[str] = None
    modified_since: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: Optional[int] = Field(default=None, ge=0)
