"""
Main FastAPI application.

WHY: The core itself is a library of services; this application only
exposes the billing webhook ingress and a health check around them.
"""

import logging
from contextlib import asynccontextmanager

import stripe
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from partner_access.api import billing_webhooks
from partner_access.core.config import settings
from partner_access.core.exceptions import AppException
from partner_access.core.exception_handlers import (
    app_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    generic_exception_handler,
)
from partner_access.db.session import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables before serving."""
    await init_db()
    logger.info("Partner access core started", extra={"version": settings.VERSION})
    yield


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern lets tests build an app with their own
    dependency overrides.

    Returns:
        Configured FastAPI application instance
    """
    logging.getLogger("partner_access").setLevel(settings.LOG_LEVEL.upper())

    if settings.STRIPE_SECRET_KEY:
        stripe.api_key = settings.STRIPE_SECRET_KEY

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Entitlements, billing reconciliation and organization lifecycle",
        version=settings.VERSION,
        docs_url=f"{settings.API_PREFIX}/docs",
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
        lifespan=lifespan,
    )

    # Register exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """Liveness probe; does not touch the database."""
        return {"status": "healthy", "version": settings.VERSION}

    app.include_router(billing_webhooks.router, prefix=settings.API_PREFIX)

    return app


app = create_app()
