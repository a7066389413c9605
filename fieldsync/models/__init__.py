"""
Database models - import all models here so Alembic can discover them.
"""
from fieldsync.models.company import Company
from fieldsync.models.job import Job
from fieldsync.models.quote import Quote
from fieldsync.models.job_activity import JobActivity
from fieldsync.models.attachment import Attachment
from fieldsync.models.material import Material
from fieldsync.models.staff import Staff
from fieldsync.models.webhook_event import WebhookEvent
from fieldsync.models.reconciliation_log import ReconciliationLog
from fieldsync.models.audit_log import AuditLog

__all__ = [
    "Company",
    "Job",
    "Quote",
    "JobActivity",
    "Attachment",
    "Material",
    "Staff",
    "WebhookEvent",
    "ReconciliationLog",
    "AuditLog",
]
