"""
Audit trail writer - one AuditLog row per significant action.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


async def record_audit(
    db: AsyncSession,
    action: str,
    status: str = "success",
    actor: Optional[str] = "system",
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    message: Optional[str] = None,
    error_message: Optional[str] = None,
    duration_ms: Optional[int] = None,
    data: Optional[dict] = None,
) -> AuditLog:
    """Add an audit row to the session. The caller commits."""
    entry = AuditLog(
        action=action,
        status=status,
        actor=actor,
        target_type=target_type,
        target_id=target_id,
        message=message,
        error_message=error_message,
        duration_ms=duration_ms,
        data=data,
    )
    db.add(entry)
    logger.debug("Audit %s target=%s:%s status=%s", action, target_type, target_id, status)
    return entry
