"""Initial schema - ServiceM8 mirror, webhook events, reconciliation and audit logs.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # Companies (ServiceM8 clients)
    op.create_table(
        "companies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sm8_uuid", sa.String(36), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("address", sa.Text),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(50)),
        sa.Column("website", sa.String(255)),
        sa.Column("notes", sa.Text),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("sync_pending", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_companies_sync_pending", "companies", ["sync_pending"])
    op.create_index("ix_companies_last_synced_at", "companies", ["last_synced_at"])

    # Jobs
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sm8_uuid", sa.String(36), nullable=False, unique=True),
        sa.Column("company_uuid", sa.String(36)),
        sa.Column("status", sa.String(30), nullable=False, server_default="Quote"),
        sa.Column("description", sa.Text),
        sa.Column("address", sa.Text),
        sa.Column("scheduled_date", sa.DateTime(timezone=True)),
        sa.Column("generated_job_id", sa.String(50)),
        sa.Column("priority", sa.String(20)),
        sa.Column("staff_assigned", sa.String(36)),
        sa.Column("quote_sent", sa.Boolean, server_default=sa.false()),
        sa.Column("job_is_quoted", sa.Boolean, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_jobs_company_uuid", "jobs", ["company_uuid"])
    op.create_index("ix_jobs_status", "jobs", ["status"])

    # Quotes (one per job)
    op.create_table(
        "quotes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("jobs.id"), nullable=False, unique=True),
        sa.Column("job_uuid", sa.String(36), nullable=False),
        sa.Column("amount", sa.Float),
        sa.Column("items", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("rejection_reason", sa.Text),
        *_timestamps(),
    )
    op.create_index("ix_quotes_job_uuid", "quotes", ["job_uuid"])
    op.create_index("ix_quotes_status", "quotes", ["status"])

    # Job activities (scheduled/completed visits)
    op.create_table(
        "job_activities",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sm8_uuid", sa.String(36), nullable=False, unique=True),
        sa.Column("job_uuid", sa.String(36), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True)),
        sa.Column("end_date", sa.DateTime(timezone=True)),
        sa.Column("staff_uuid", sa.String(36)),
        sa.Column("activity_type", sa.String(50)),
        sa.Column("activity_was_scheduled", sa.Boolean, server_default=sa.false()),
        sa.Column("notes", sa.Text),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_job_activities_job_uuid", "job_activities", ["job_uuid"])

    # Attachments
    op.create_table(
        "attachments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sm8_uuid", sa.String(36), nullable=False, unique=True),
        sa.Column("job_uuid", sa.String(36), nullable=False),
        sa.Column("file_name", sa.String(255)),
        sa.Column("file_type", sa.String(100)),
        sa.Column("file_size", sa.Integer),
        sa.Column("category", sa.String(50)),
        sa.Column("description", sa.Text),
        sa.Column("uploaded_by", sa.String(36)),
        sa.Column("upload_date", sa.DateTime(timezone=True)),
        sa.Column("download_url", sa.Text),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_attachments_job_uuid", "attachments", ["job_uuid"])

    # Materials
    op.create_table(
        "materials",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sm8_uuid", sa.String(36), nullable=False, unique=True),
        sa.Column("job_uuid", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255)),
        sa.Column("description", sa.Text),
        sa.Column("quantity", sa.Float),
        sa.Column("unit_cost", sa.Float),
        sa.Column("total_cost", sa.Float),
        sa.Column("category", sa.String(50)),
        *_timestamps(),
    )
    op.create_index("ix_materials_job_uuid", "materials", ["job_uuid"])

    # Staff
    op.create_table(
        "staff",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sm8_uuid", sa.String(36), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("email", sa.String(255)),
        sa.Column("mobile", sa.String(50)),
        sa.Column("staff_type", sa.String(50)),
        sa.Column("skills", postgresql.JSONB),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        *_timestamps(),
    )

    # Webhook events (every delivery, accepted or rejected)
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sm8_event_id", sa.String(64), nullable=False, unique=True),
        sa.Column("provider", sa.String(50), nullable=False, server_default="servicem8"),
        sa.Column("object_type", sa.String(30)),
        sa.Column("object_uuid", sa.String(36)),
        sa.Column("event_type", sa.String(50)),
        sa.Column("raw_payload", postgresql.JSONB),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_details", sa.Text),
        sa.Column("error_history", postgresql.JSONB),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])
    op.create_index("ix_webhook_events_created_at", "webhook_events", ["created_at"])
    op.create_index("ix_webhook_events_object", "webhook_events", ["object_type", "object_uuid"])

    # Reconciliation runs
    op.create_table(
        "reconciliation_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("records_processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("errors", sa.Integer, nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("error_message", sa.Text),
        sa.Column("details", postgresql.JSONB),
    )
    op.create_index("ix_reconciliation_logs_started_at", "reconciliation_logs", ["started_at"])
    op.create_index("ix_reconciliation_logs_status", "reconciliation_logs", ["status"])

    # Audit trail
    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default="success"),
        sa.Column("actor", sa.String(100)),
        sa.Column("target_type", sa.String(50)),
        sa.Column("target_id", sa.String(64)),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("message", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_target", "audit_logs", ["target_type", "target_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("reconciliation_logs")
    op.drop_table("webhook_events")
    op.drop_table("staff")
    op.drop_table("materials")
    op.drop_table("attachments")
    op.drop_table("job_activities")
    op.drop_table("quotes")
    op.drop_table("jobs")
    op.drop_table("companies")
