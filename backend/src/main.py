"""FastAPI application entry point for DentaRad.

Teleradiology REST API for dental CBCT scan uploads, reporting and billing.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from dentarad.api import register_exception_handlers
from dentarad.api.middleware import setup_middleware
from dentarad.config import get_settings
from dentarad.db import close_all_connections, get_db_session, get_redis
from dentarad.logging import get_logger, setup_logging

# Initialize logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown events."""
    settings = get_settings()
    logger.info(
        "Starting DentaRad API",
        extra={
            "environment": settings.environment,
            "debug": settings.api_debug,
        },
    )

    yield

    logger.info("Shutting down DentaRad API")
    await close_all_connections()


settings = get_settings()

app = FastAPI(
    title="DentaRad API",
    description="Dental CBCT teleradiology REST API",
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

setup_middleware(app)

# CORS goes on last so it wraps everything, including rate limit rejections
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


# =========================
# Health Check Endpoints
# =========================


@app.get("/health", tags=["Health"])
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "dentarad-api"}


@app.get("/health/ready", tags=["Health"])
async def readiness_check():
    """Readiness check that verifies database and cache connectivity."""
    checks = {
        "postgres": "unknown",
        "redis": "unknown",
    }

    try:
        async with get_db_session() as session:
            await session.execute(text("SELECT 1"))
            checks["postgres"] = "healthy"
    except Exception as e:
        checks["postgres"] = f"unhealthy: {str(e)}"

    try:
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = "healthy"
    except Exception as e:
        checks["redis"] = f"unhealthy: {str(e)}"

    all_healthy = all(v == "healthy" for v in checks.values())
    status_code = 200 if all_healthy else 503

    return JSONResponse(
        status_code=status_code,
        content={
            "status": "ready" if all_healthy else "not_ready",
            "checks": checks,
        },
    )


@app.get("/health/live", tags=["Health"])
async def liveness_check():
    """Liveness check - just confirms the service is running."""
    return {"status": "alive"}


# =========================
# API Routers
# =========================

from dentarad.api.auth import router as auth_router
from dentarad.api.cases import router as cases_router
from dentarad.api.invoices import router as invoices_router
from dentarad.api.notifications import router as notifications_router
from dentarad.api.pacs import router as pacs_router
from dentarad.api.reports import router as reports_router
from dentarad.api.templates import router as templates_router
from dentarad.api.uploads import router as uploads_router
from dentarad.api.webhooks import router as webhooks_router

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(cases_router, prefix="/api/v1", tags=["Cases"])
app.include_router(uploads_router, prefix="/api/v1", tags=["Uploads"])
app.include_router(reports_router, prefix="/api/v1", tags=["Reports"])
app.include_router(templates_router, prefix="/api/v1", tags=["Templates"])
app.include_router(invoices_router, prefix="/api/v1", tags=["Invoices"])
app.include_router(pacs_router, prefix="/api/v1", tags=["PACS"])
app.include_router(notifications_router, prefix="/api/v1", tags=["Notifications"])
app.include_router(webhooks_router, prefix="/api/v1", tags=["Webhooks"])


# =========================
# Root Endpoint
# =========================


@app.get("/", tags=["Root"])
async def root():
    """API root endpoint."""
    return {
        "name": "DentaRad API",
        "version": "1.0.0",
        "description": "Dental CBCT teleradiology",
        "docs": "/docs" if settings.is_development else None,
    }
