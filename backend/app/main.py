from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging

from app.api import analysis, health, repositories
from app.core.config import settings
from app.core.errors import register_exception_handlers
from app.core.logging import configure_logging
from app.db.session import init_models
from app.services.container import get_cache, rate_limit_store
from app.services.rate_limiter import run_garbage_collector

configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info(f"{settings.PROJECT_NAME} starting up ({settings.ENVIRONMENT})...")
    if "sqlite" in settings.DATABASE_URL:
        await init_models()

    cache = get_cache()
    await cache.connect()
    cache.start()
    gc_task = asyncio.create_task(run_garbage_collector(
        rate_limit_store,
        interval=settings.RATE_LIMIT_GC_INTERVAL_SECONDS,
        max_age=settings.RATE_LIMIT_GC_MAX_AGE_SECONDS,
    ))
    yield
    # Shutdown
    logger.info(f"{settings.PROJECT_NAME} shutting down...")
    gc_task.cancel()
    try:
        await gc_task
    except asyncio.CancelledError:
        pass
    await cache.close()
    logger.info("Background tasks stopped")

app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Code quality scores, trends and badges for GitHub repositories",
    version="1.0.0",
    lifespan=lifespan
)

register_exception_handlers(app)

# Configure CORS
# FRONTEND_ORIGINS restricts the allowed origins; unset means any origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)

app.include_router(health.router, prefix=f"{settings.API_V1_STR}/health", tags=["health"])
app.include_router(repositories.router, prefix=f"{settings.API_V1_STR}/repositories", tags=["repositories"])
app.include_router(analysis.router, prefix=f"{settings.API_V1_STR}/analysis", tags=["analysis"])
