"""
Job model - a ServiceM8 job (work order, quote, scheduled visit).
Status values mirror ServiceM8: Quote, Work Order, Scheduled, In Progress,
Completed, Cancelled, Emergency, On Hold.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from fieldsync.database import Base


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    sm8_uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    company_uuid: Mapped[Optional[str]] = mapped_column(String(36))

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="Quote")
    description: Mapped[Optional[str]] = mapped_column(Text)
    address: Mapped[Optional[str]] = mapped_column(Text)
    scheduled_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    generated_job_id: Mapped[Optional[str]] = mapped_column(String(50))
    priority: Mapped[Optional[str]] = mapped_column(String(20))
    staff_assigned: Mapped[Optional[str]] = mapped_column(String(36))
    quote_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    job_is_quoted: Mapped[bool] = mapped_column(Boolean, default=False)

    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    quote: Mapped[Optional["Quote"]] = relationship(back_populates="job", uselist=False)

    __table_args__ = (
        Index("ix_jobs_company_uuid", "company_uuid"),
        Index("ix_jobs_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Job {self.sm8_uuid[:8]} status={self.status}>"
