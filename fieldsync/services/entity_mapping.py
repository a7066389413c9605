"""
ServiceM8 -> local column mapping.

Each map_* function turns a validated ServiceM8 snapshot into the dict of
local column values the upsert compares against. Upserts only write when
diff_fields() reports a change, so mapping must be deterministic: the same
snapshot always yields the same values.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser

from fieldsync.schemas.servicem8 import (
    SM8Attachment,
    SM8Company,
    SM8Job,
    SM8JobActivity,
    SM8Material,
    SM8Staff,
)

# ServiceM8 uses this for "no date"
_EMPTY_DATES = {"", "0000-00-00", "0000-00-00 00:00:00"}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to an aware UTC datetime (some drivers hand back naive UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_sm8_datetime(value: Optional[str]) -> Optional[datetime]:
    """ServiceM8 timestamps are 'YYYY-MM-DD HH:MM:SS' in UTC, or ISO-8601."""
    if value is None or str(value).strip() in _EMPTY_DATES:
        return None
    try:
        return as_utc(date_parser.parse(str(value)))
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Invalid ServiceM8 date '{value}'") from e


def map_company(company: SM8Company) -> dict[str, Any]:
    return {
        "name": company.name,
        "address": company.address,
        "email": company.email,
        "phone": company.phone or company.mobile,
        "website": company.website,
        "notes": company.notes,
        "is_active": company.is_active == 1,
    }


def map_job(job: SM8Job) -> dict[str, Any]:
    return {
        "company_uuid": job.company_uuid,
        "status": job.status,
        "description": job.job_description,
        "address": job.job_address,
        "scheduled_date": parse_sm8_datetime(job.date),
        "generated_job_id": job.generated_job_id,
        "priority": job.job_priority,
        "staff_assigned": job.staff_assigned,
        "quote_sent": job.quote_sent == 1,
        "job_is_quoted": job.job_is_quoted == 1,
    }


def quote_status(job: SM8Job) -> str:
    if job.quote_approved == 1:
        return "approved"
    if job.quote_rejection_reason:
        return "rejected"
    return "pending"


def map_quote(job: SM8Job, existing_rejected_at: Optional[datetime] = None) -> dict[str, Any]:
    status = quote_status(job)
    items = None
    if job.quote_line_items is not None:
        items = [item.model_dump(exclude_none=True) for item in job.quote_line_items]
    rejected_at = None
    if status == "rejected":
        rejected_at = as_utc(existing_rejected_at) or datetime.now(timezone.utc)
    return {
        "job_uuid": job.uuid,
        "amount": job.quote_total_amount,
        "items": items,
        "status": status,
        "approved_at": parse_sm8_datetime(job.quote_approved_date) if status == "approved" else None,
        "rejected_at": rejected_at,
        "rejection_reason": job.quote_rejection_reason if status == "rejected" else None,
    }


def map_job_activity(activity: SM8JobActivity) -> dict[str, Any]:
    return {
        "job_uuid": activity.job_uuid,
        "start_date": parse_sm8_datetime(activity.start_date),
        "end_date": parse_sm8_datetime(activity.end_date),
        "staff_uuid": activity.staff_uuid,
        "activity_type": activity.activity_type,
        "activity_was_scheduled": activity.activity_was_scheduled == 1,
        "notes": activity.notes,
    }


def map_attachment(attachment: SM8Attachment) -> dict[str, Any]:
    return {
        "job_uuid": attachment.job_uuid,
        "file_name": attachment.file_name,
        "file_type": attachment.file_type,
        "file_size": attachment.file_size,
        "category": attachment.category,
        "description": attachment.description,
        "uploaded_by": attachment.uploaded_by,
        "upload_date": parse_sm8_datetime(attachment.upload_date),
        "download_url": attachment.download_url,
    }


def map_material(material: SM8Material) -> dict[str, Any]:
    return {
        "job_uuid": material.job_uuid,
        "name": material.name,
        "description": material.description,
        "quantity": material.quantity,
        "unit_cost": material.unit_cost,
        "total_cost": material.total_cost,
        "category": material.category,
    }


def map_staff(staff: SM8Staff) -> dict[str, Any]:
    return {
        "name": staff.name,
        "email": staff.email,
        "mobile": staff.mobile,
        "staff_type": staff.staff_type,
        "skills": staff.skills,
        "is_active": staff.is_active == 1,
    }


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value)
    return value


def diff_fields(row: Any, values: dict[str, Any]) -> dict[str, Any]:
    """Columns whose mapped value differs from what the row holds."""
    changed = {}
    for field, new_value in values.items():
        if _normalize(getattr(row, field)) != _normalize(new_value):
            changed[field] = new_value
    return changed
