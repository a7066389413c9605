"""
Webhook event queue + audit trail - every ServiceM8 delivery is recorded
before processing, including rejected ones.

Status lifecycle: queued -> processing -> success | failed.
A failed event may be claimed back to processing by a retry.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, Integer, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from fieldsync.database import Base


class WebhookStatus:
    """Webhook event status constants."""
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    ALL = (QUEUED, PROCESSING, SUCCESS, FAILED)
    TERMINAL = (SUCCESS, FAILED)
    CLAIMABLE = (QUEUED, FAILED)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sm8_event_id = Column(String(64), nullable=False, unique=True)
    provider = Column(String(50), nullable=False, default="servicem8")
    object_type = Column(String(30), nullable=True)
    object_uuid = Column(String(36), nullable=True)
    event_type = Column(String(50), nullable=True)
    raw_payload = Column(JSONB, nullable=True)
    payload_hash = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=WebhookStatus.QUEUED)
    attempts = Column(Integer, nullable=False, default=0)
    error_details = Column(Text, nullable=True)
    error_history = Column(JSONB, nullable=True)  # [{"attempt", "error", "at"}]
    correlation_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_status", "status"),
        Index("ix_webhook_events_created_at", "created_at"),
        Index("ix_webhook_events_object", "object_type", "object_uuid"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "sm8_event_id": self.sm8_event_id,
            "provider": self.provider,
            "object_type": self.object_type,
            "object_uuid": self.object_uuid,
            "event_type": self.event_type,
            "payload": self.raw_payload,
            "status": self.status,
            "attempts": self.attempts,
            "error_details": self.error_details,
            "error_history": self.error_history or [],
            "correlation_id": self.correlation_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
