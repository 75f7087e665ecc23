"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from kcr.config import get_settings
from kcr.database import close_db, init_db
from kcr.health.router import router as health_router
from kcr.middleware import setup_middleware
from kcr.points.router import router as points_router
from kcr.redis_client import close_redis, init_redis
from kcr.rewards.admin_router import router as admin_router
from kcr.rewards.router import router as rewards_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    if settings.redis_url:
        await init_redis(settings.redis_url)
    else:
        logger.warning("KCR_REDIS_URL is empty: rate limiting and broadcasts are disabled")

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Kerala Connect Rewards API",
        description="Points ledger, reward catalog and coupon redemption for Kerala Connect",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(points_router)
    app.include_router(rewards_router)
    app.include_router(admin_router)

    return app


app = create_app()
