"""
Reconciliation run history - one row per run, kept indefinitely.
Rolling 30-day statistics are aggregated from this table on read.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from fieldsync.database import Base


class ReconciliationType:
    FULL = "full"
    INCREMENTAL = "incremental"
    EMERGENCY = "emergency"

    ALL = (FULL, INCREMENTAL, EMERGENCY)


class ReconciliationStatus:
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class ReconciliationLog(Base):
    __tablename__ = "reconciliation_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReconciliationStatus.RUNNING
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[Optional[dict]] = mapped_column(JSONB)

    __table_args__ = (
        Index("ix_reconciliation_logs_started_at", "started_at"),
        Index("ix_reconciliation_logs_status", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "type": self.type,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "records_processed": self.records_processed,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "details": self.details or {},
        }

    def __repr__(self) -> str:
        return f"<ReconciliationLog {self.type} status={self.status}>"
