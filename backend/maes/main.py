"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from maes.api import router as api_router
from maes.api.errors import register_exception_handlers
from maes.core import metrics
from maes.core.config import settings
from maes.core.logging import configure_logging
from maes.db.database import AsyncSessionLocal, get_db
from maes.services import job_store
from maes.services.dispatcher import get_dispatcher
from maes.services.lifecycle import get_lifecycle_manager

logger = logging.getLogger(__name__)


async def recover_state() -> None:
    """
    Reconstruct the admitted set after a restart: seed the default
    organization, fail jobs left running, and re-drain pending queues.
    """
    async with AsyncSessionLocal() as db:
        await get_lifecycle_manager().ensure_default_organization(db)
        failed = await get_dispatcher().recover(db)
    logger.info(f"Startup recovery complete ({failed} interrupted job(s) failed)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} (env={settings.ENV})")

    # NOTE: Database schema is managed by Alembic migrations.
    # Run `alembic upgrade head` before starting the app.
    await recover_state()

    yield

    logger.info("Shutting down")


app = FastAPI(
    title=settings.APP_NAME,
    description="Job orchestration and organization lifecycle service",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware - origins from env variable (comma-separated)
cors_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.middleware("http")(metrics.track_http_requests)

register_exception_handlers(app)

# API routes
app.include_router(api_router, prefix="/api")


@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Liveness plus a cheap database round-trip"""
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Health check database query failed: {e}")
        database = "unavailable"
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "app": settings.APP_NAME,
        "database": database,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint(db: AsyncSession = Depends(get_db)):
    """Prometheus scrape target"""
    metrics.set_pending_counts(await job_store.count_pending_by_organization(db))
    return metrics.render_latest()
