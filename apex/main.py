"""
Apex AI core - webhook ingestion and campaign execution service.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from apex.api.router import api_router
from apex.config import get_settings
from apex.database import Database
from apex.services.idempotency import IdempotencyStore
from apex.services.webhook_handlers import default_registry
from apex.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)
from apex.utils.redis_client import close_redis
from apex.workers.idempotency_sweeper import run_idempotency_sweeper

logger = logging.getLogger("apex")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Apex starting up (env=%s)", settings.app_env)

    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - Vapi private keys are read as plaintext. "
            "Generate a Fernet key for production."
        )
    if settings.app_env == "production" and not settings.cron_secret:
        logger.warning("CRON_SECRET not set - the campaign executor trigger is unauthenticated")

    if settings.sentry_dsn:
        try:
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    # A Database handed to create_app() belongs to the caller
    owns_database = getattr(app.state, "database", None) is None
    if owns_database:
        app.state.database = Database.from_settings(settings)
    database: Database = app.state.database

    worker_tasks: list[asyncio.Task] = []
    if settings.idempotency_sweeper_enabled:
        store = IdempotencyStore(
            database.session_factory,
            reservation_ttl=timedelta(seconds=settings.idempotency_reservation_ttl_seconds),
        )
        worker_tasks.append(asyncio.create_task(
            run_idempotency_sweeper(store, settings.idempotency_cleanup_interval_seconds)
        ))
        logger.info("Idempotency sweeper started")

    yield

    logger.info("Apex shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)

    if owns_database:
        await database.dispose()
        app.state.database = None
    await close_redis()
    logger.info("Apex shutdown complete")


def create_app(database: Optional[Database] = None) -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Apex AI",
        description="Webhook ingestion and campaign execution for Apex AI",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.database = database
    # Fails at startup if any webhook event type has no handler
    application.state.handler_registry = default_registry()

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
