"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from learnpath.coins.router import router as coins_router
from learnpath.cohorts.router import router as cohorts_router
from learnpath.config import get_settings
from learnpath.database import close_db, init_db
from learnpath.health.router import router as health_router
from learnpath.middleware import setup_middleware
from learnpath.progress.router import router as progress_router
from learnpath.redis_client import close_redis, init_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    if settings.redis_enabled:
        await init_redis(settings.redis_url, max_connections=settings.redis_max_connections)
    else:
        logger.info("Redis disabled; progress and balance caching is off")

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="learnpath",
        description="Progression and reward engine: completion tracking, week unlocks and the coin ledger",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(progress_router)
    app.include_router(coins_router)
    app.include_router(cohorts_router)

    return app


app = create_app()
