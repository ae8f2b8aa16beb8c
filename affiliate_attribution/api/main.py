"""Affiliate Attribution API: FastAPI application with DB-backed storage."""
from __future__ import annotations

import logging

from affiliate_attribution.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_attribution.db.engine import engine, get_session
from affiliate_attribution.db.tables import Base
from config.settings import settings

APP_VERSION = "0.1.0"

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Patient data must never leave the service
        send_default_pii=False,
        before_send=lambda event, hint: (
            {**event, "request": {**event.get("request", {}), "cookies": None, "data": None}}
            if "request" in event else event
        ),
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate settings, create tables, start background jobs."""
    from affiliate_attribution.startup_checks import validate_settings
    validate_settings()

    # Import all tables so they're registered with Base.metadata
    import affiliate_attribution.db.affiliate_tables  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    from affiliate_attribution.services.scheduler import start_scheduler, stop_scheduler
    if settings.SCHEDULER_ENABLED:
        start_scheduler(
            approval_interval_minutes=settings.COMMISSION_APPROVAL_INTERVAL_MINUTES,
            reconcile_interval_hours=settings.TOUCH_RECONCILE_INTERVAL_HOURS,
        )

    yield

    logger.info("Shutting down, draining connections...")
    stop_scheduler()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Affiliate Attribution API",
    version=APP_VERSION,
    description="Affiliate touch tracking, patient attribution and commission ledger for clinics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID tracing
from affiliate_attribution.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)

from affiliate_attribution.api.attribution import router as attribution_router
app.include_router(attribution_router)

from affiliate_attribution.api.attribution import admin_router as attribution_admin_router
app.include_router(attribution_admin_router)


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check, validates DB connectivity."""
    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.warning("Health check could not reach the database", exc_info=True)
        db_status = "error"
    status = "ok" if db_status == "connected" else "degraded"
    return {"status": status, "db": db_status, "version": APP_VERSION}


@app.get("/ready")
async def readiness(session: AsyncSession = Depends(get_session)):
    """Readiness probe. Returns 503 if not ready to serve traffic."""
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Readiness check could not reach the database", exc_info=True)
        return JSONResponse(status_code=503, content={"ready": False, "reason": "database unavailable"})
    return {"ready": True}
