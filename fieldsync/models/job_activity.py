"""
Job activity model - scheduled or recorded visits against a job.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from fieldsync.database import Base


class JobActivity(Base):
    __tablename__ = "job_activities"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    sm8_uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    job_uuid: Mapped[str] = mapped_column(String(36), nullable=False)

    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    staff_uuid: Mapped[Optional[str]] = mapped_column(String(36))
    activity_type: Mapped[Optional[str]] = mapped_column(String(50))
    activity_was_scheduled: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_job_activities_job_uuid", "job_uuid"),
    )
