"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (database, Redis, the
challenge sweeper). Middleware, CORS, and routers all registered here.
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tripgate import __version__
from tripgate.api import api_router
from tripgate.config import settings
from tripgate.db.engine import async_session_factory, engine, init_db
from tripgate.middleware.rate_limit import RateLimitMiddleware
from tripgate.middleware.request_id import RequestIdMiddleware
from tripgate.middleware.security import SecurityHeadersMiddleware
from tripgate.redis_pool import close_redis, init_redis
from tripgate.services.challenge_service import ChallengeSweeper

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown.
    """
    logger.info(
        "tripgate.starting",
        version=__version__,
        environment=settings.environment,
        rp_id=settings.rp_id,
        port=settings.port,
    )

    # SQLite dev databases are created on the fly; Postgres uses Alembic.
    if settings.database_url.startswith("sqlite"):
        await init_db()

    try:
        await init_redis()
        logger.info("tripgate.redis_connected", url=settings.redis_url)
    except Exception as e:
        logger.warning("tripgate.redis_unavailable", error=str(e))
        # Redis is optional; only rate limiting is lost

    sweeper = ChallengeSweeper(async_session_factory)
    sweeper_task = asyncio.create_task(sweeper.run_loop())

    yield

    logger.info("tripgate.shutdown")

    sweeper.stop()
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass

    await close_redis()
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Tripgate",
        description="Passkey sign-in and trip access control for the photo map",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        default_rpm=settings.rate_limit_rpm,
        auth_rpm=settings.rate_limit_auth_rpm,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)
    return app


# Default app instance (used by uvicorn: tripgate.main:app)
app = create_app()
