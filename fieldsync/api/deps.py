"""
Shared FastAPI dependencies - application components and auth guards.

The ServiceM8 client, sync service, processor, queue and reconciliation
engine are built once in the lifespan and stored on app.state, so every
request shares the same client cache and rate-limit state.
"""
import hmac
import logging

from fastapi import Header, HTTPException, Request

from fieldsync.config import get_settings

logger = logging.getLogger(__name__)


def _component(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return component


def get_client(request: Request):
    return _component(request, "servicem8_client")


def get_sync_service(request: Request):
    return _component(request, "sync_service")


def get_processor(request: Request):
    return _component(request, "webhook_processor")


def get_webhook_queue(request: Request):
    return _component(request, "webhook_queue")


def get_reconciliation_engine(request: Request):
    return _component(request, "reconciliation_engine")


def _check_bearer(authorization: str, secret: str, label: str) -> None:
    if not secret:
        logger.error("%s not configured - rejecting request", label)
        raise HTTPException(status_code=503, detail=f"{label} not configured")
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def require_cron_secret(authorization: str = Header(default="")) -> None:
    """Cron surfaces authenticate with `Authorization: Bearer <CRON_SECRET>`."""
    _check_bearer(authorization, get_settings().cron_secret, "CRON_SECRET")


async def require_admin_key(authorization: str = Header(default="")) -> None:
    """Admin and management surfaces authenticate with `Authorization: Bearer <ADMIN_API_KEY>`."""
    _check_bearer(authorization, get_settings().admin_api_key, "ADMIN_API_KEY")
