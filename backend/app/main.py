"""Subscription Reconciler: FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.billing import router as billing_router
from app.api.v1.webhooks import dev_router as webhooks_dev_router
from app.api.v1.webhooks import router as webhooks_router
from app.billing.context import BillingContext, build_context
from app.billing.errors import (
    BillingError,
    BillingValidationError,
    DomainError,
    PersistenceError,
    ProviderError,
    ProviderUnavailableError,
    SubscriptionNotFoundError,
    WebhookVerificationError,
)
from app.billing.jobs import build_scheduler
from app.config import Settings

# Configure root logger so all app.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

# Most specific first
_ERROR_STATUS: list[tuple[type[BillingError], int]] = [
    (BillingValidationError, status.HTTP_400_BAD_REQUEST),
    (WebhookVerificationError, status.HTTP_400_BAD_REQUEST),
    (SubscriptionNotFoundError, status.HTTP_404_NOT_FOUND),
    (DomainError, status.HTTP_409_CONFLICT),
    (ProviderUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for_error(error: BillingError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    code = status_for_error(exc)
    if code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=code, content={"detail": exc.message})


def create_app(settings: Settings | None = None, context: BillingContext | None = None) -> FastAPI:
    """Build the application. Tests pass a prebuilt context with fakes."""
    settings = settings or (context.settings if context else Settings())
    context = context or build_context(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler for startup and shutdown events."""
        scheduler = None
        if settings.scheduler_enabled:
            scheduler = build_scheduler(context)
            scheduler.start()
            logger.info("Billing job scheduler started")
        yield
        # Shutdown: stop jobs, close HTTP client and engine connections
        if scheduler is not None:
            scheduler.shutdown(wait=False)
            logger.info("Billing job scheduler stopped")
        await context.aclose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Keeps local subscription records consistent with Stripe.",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.billing = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BillingError, billing_error_handler)

    # Routers
    app.include_router(billing_router)
    app.include_router(webhooks_router)
    if settings.test_webhooks_enabled:
        logger.warning("Development webhook endpoints enabled (no signature verification)")
        app.include_router(webhooks_dev_router)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "service": settings.app_name}

    @app.get("/", tags=["root"])
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app
