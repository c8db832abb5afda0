"""
FastAPI application factory.
Serves payment webhooks, operator endpoints and metrics; the billing
runs themselves execute in the RQ worker.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from eom_billing.config import settings
from eom_billing.api.router import api_router
from eom_billing.models.database import close_db
from eom_billing.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    setup_logging()
    logger.info(
        "app_starting",
        version=settings.APP_VERSION,
        business_timezone=settings.BUSINESS_TIMEZONE,
        cycle_start_day=settings.CYCLE_START_DAY,
    )

    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    yield

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="End-of-Month Billing",
        description="Monthly statement windows, invoice finalization and payment reconciliation.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        app.mount("/metrics", make_asgi_app())

    app.include_router(api_router)
    return app


# Application instance
app = create_app()
