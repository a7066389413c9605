"""
FieldSync - ServiceM8 sync and reconciliation service.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from fieldsync.config import get_settings
from fieldsync.api.router import api_router
from fieldsync.database import dispose_engine
from fieldsync.integrations.servicem8 import ServiceM8Client
from fieldsync.services.realtime import RedisBroadcaster
from fieldsync.services.reconciliation import ReconciliationEngine
from fieldsync.services.sync import SyncService
from fieldsync.services.webhook_processor import WebhookProcessor
from fieldsync.services.webhook_queue import WebhookQueue
from fieldsync.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)
from fieldsync.utils.redis import close_redis

logger = logging.getLogger("fieldsync")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def build_components(app: FastAPI, settings) -> None:
    """One shared client (cache + rate-limit state) for every component."""
    client = ServiceM8Client.from_settings(settings)
    sync_service = SyncService(client)
    processor = WebhookProcessor(
        client,
        sync_service,
        broadcaster=RedisBroadcaster(),
        max_attempts=settings.webhook_max_attempts,
    )
    app.state.servicem8_client = client
    app.state.sync_service = sync_service
    app.state.webhook_processor = processor
    app.state.webhook_queue = WebhookQueue(
        processor,
        worker_count=settings.webhook_worker_count,
        maxsize=settings.webhook_queue_size,
    )
    app.state.reconciliation_engine = ReconciliationEngine(
        client,
        sync_service,
        run_budget_seconds=settings.reconciliation_run_budget_seconds,
        sample_size=settings.reconciliation_sample_size,
        watchdog_grace_seconds=settings.reconciliation_watchdog_grace_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("FieldSync starting up (env=%s)", settings.app_env)

    # Security warnings
    if not settings.servicem8_api_key and not settings.servicem8_oauth_token:
        logger.warning(
            "Neither SERVICEM8_API_KEY nor SERVICEM8_OAUTH_TOKEN is set - "
            "every ServiceM8 call will fail with an auth error."
        )
    if not settings.webhook_secret:
        logger.warning(
            "WEBHOOK_SECRET not set - webhook signatures cannot be verified. "
            "Unsigned deliveries are %s.",
            "accepted" if settings.app_env != "production" or settings.allow_unsigned_webhooks
            else "rejected",
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    build_components(app, settings)
    app.state.webhook_queue.start()

    worker_tasks: list[asyncio.Task] = []

    from fieldsync.workers.webhook_sweeper import run_webhook_sweeper
    worker_tasks.append(asyncio.create_task(
        run_webhook_sweeper(app.state.webhook_processor, app.state.webhook_queue, settings)
    ))
    logger.info("Webhook sweeper started")

    if settings.reconciliation_scheduler_enabled:
        from fieldsync.workers.reconciliation_scheduler import run_reconciliation_scheduler
        worker_tasks.append(asyncio.create_task(
            run_reconciliation_scheduler(app.state.reconciliation_engine, settings)
        ))
        logger.info("Reconciliation scheduler started")
    else:
        logger.info("Reconciliation scheduler disabled (RECONCILIATION_SCHEDULER_ENABLED=false)")

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("FieldSync shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    await app.state.webhook_queue.stop(timeout=10.0)
    await app.state.servicem8_client.aclose()
    await close_redis()
    await dispose_engine()
    logger.info("FieldSync shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="FieldSync",
        description="ServiceM8 sync, webhook processing and reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
