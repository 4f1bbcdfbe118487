"""FastAPI application: Stripe webhook receiver and health check."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from premium_ledger import __version__
from premium_ledger.api.v1.webhooks import router as webhooks_router
from premium_ledger.clock import Clock, SystemClock
from premium_ledger.logging_config import configure_logging, get_logger
from premium_ledger.payments.gateway import StripeGateway
from premium_ledger.payments.reconciler import WebhookReconciler
from premium_ledger.settings import settings
from premium_ledger.storage.db import Database, db

logger = get_logger(__name__)


def create_app(
    gateway: Any = None,
    database: Database | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Create and configure the FastAPI app.

    Args:
        gateway: Payment gateway (defaults to ``StripeGateway``)
        database: Database (defaults to the global instance)
        clock: Time source (defaults to the system clock)

    Returns:
        Configured FastAPI app
    """
    database = database or db
    gateway = gateway or StripeGateway()
    clock = clock or SystemClock()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app_starting", env=settings.env)
        database.create_tables()
        yield
        logger.info("app_shutting_down")

    is_production = settings.env == "production"
    app = FastAPI(
        title="Premium Ledger",
        description="Premium entitlements and referral commissions from Stripe webhooks",
        version=__version__,
        docs_url=None if is_production else "/api/docs",
        redoc_url=None,
        openapi_url=None if is_production else "/api/openapi.json",
        lifespan=lifespan,
    )

    app.state.gateway = gateway
    app.state.database = database
    app.state.reconciler = WebhookReconciler(gateway, database=database, clock=clock)

    app.include_router(webhooks_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": __version__,
            "env": settings.env,
        }

    return app


def get_app() -> FastAPI:
    """App factory for ``uvicorn --factory premium_ledger.api.main:get_app``."""
    configure_logging()
    return create_app()
