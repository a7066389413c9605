"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from fieldsync.api.webhooks import router as webhooks_router
from fieldsync.api.webhook_management import router as webhook_management_router
from fieldsync.api.sync import router as sync_router
from fieldsync.api.servicem8 import router as servicem8_router
from fieldsync.api.reconciliation import router as reconciliation_router
from fieldsync.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(webhook_management_router)
api_router.include_router(sync_router)
api_router.include_router(servicem8_router)
api_router.include_router(reconciliation_router)
api_router.include_router(health_router)
