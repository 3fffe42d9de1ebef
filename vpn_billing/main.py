"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from vpn_billing.config import Config, get_config
from vpn_billing.logging_config import configure_logging, get_logger
from vpn_billing.middleware import (
    ContextMiddleware,
    RequestLoggingMiddleware,
    WebhookSourceMiddleware,
)

# Initialize logger
logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Creates missing tables and runs the reconciliation worker for the
    lifetime of the process.
    """
    from vpn_billing.database import get_database, reset_database
    from vpn_billing.repositories.dedup_cache import reset_dedup_cache
    from vpn_billing.services.notification_gateway import reset_notification_gateway
    from vpn_billing.services.provider_client import reset_provider_client
    from vpn_billing.services.reconciliation_worker import (
        get_reconciliation_worker,
        reset_reconciliation_worker,
    )

    config: Config = app.state.config
    logger.info("billing_engine_starting", version=VERSION)

    try:
        if config.database.create_tables:
            get_database().create_all()

        if config.reconciliation.enabled:
            get_reconciliation_worker().start()
        else:
            logger.info("reconciliation_worker_disabled")

        logger.info("billing_engine_started", status="ready")
        yield
    finally:
        logger.info("billing_engine_shutting_down")
        reset_reconciliation_worker()
        reset_provider_client()
        reset_notification_gateway()
        reset_dedup_cache()
        reset_database()
        logger.info("billing_engine_stopped")


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        config: Configuration to use (global configuration if omitted)

    Returns:
        Configured FastAPI application instance
    """
    # Configure logging
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    config = config or get_config()
    payments = config.payments

    app = FastAPI(
        title="VPN Billing Engine",
        description="Payment-to-subscription reconciliation for VPN access",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.config = config

    # Add logging middleware
    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(
        WebhookSourceMiddleware,
        webhook_path=payments.webhook_path,
        allowed_networks=payments.allowed_networks,
        trust_forwarded_for=payments.trust_forwarded_for,
    )
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    # Register routers
    from vpn_billing.api import webhooks
    from vpn_billing.api.accounts import router as accounts_router
    from vpn_billing.api.control import router as control_router

    app.include_router(webhooks.build_router(payments.webhook_path))
    app.include_router(accounts_router)
    app.include_router(control_router)

    # Root endpoint
    @app.get("/")
    async def root() -> dict[str, str]:
        """Liveness check endpoint."""
        logger.debug("root_endpoint_called")
        return {
            "service": "vpn-billing-engine",
            "status": "running",
            "version": VERSION,
        }

    # Health check endpoint
    @app.get("/health")
    def health() -> JSONResponse:
        """Detailed health check (database and dedup cache)."""
        from vpn_billing.database import get_database
        from vpn_billing.repositories.dedup_cache import get_dedup_cache

        database_ok = get_database().ping()
        cache = get_dedup_cache()
        cache_ok = cache.ping()

        return JSONResponse(
            status_code=200 if database_ok and cache_ok else 503,
            content={
                "status": "healthy" if database_ok and cache_ok else "degraded",
                "database": "connected" if database_ok else "unavailable",
                "cache": f"{cache.backend} ({'connected' if cache_ok else 'unavailable'})",
            },
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes), webhook_path=payments.webhook_path)
    return app


# Create app instance
app = create_app()
