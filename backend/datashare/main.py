"""
FastAPI application entry point.
Configures middleware, routers, and lifecycle events.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from sqlalchemy import text

from datashare.core.config import get_settings
from datashare.core.logging import configure_logging, get_logger
from datashare.core.middleware import SecurityHeadersMiddleware
from datashare.core.rate_limit import RateLimitMiddleware, close_redis, get_redis
from datashare.db.session import close_db, get_db_session, get_session_factory, init_db
from datashare.modules.access.router import router as access_router
from datashare.modules.access.service import build_access_service

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Opens the database pool, wires the access gateway against it, and
    releases Redis and database connections on shutdown.
    """
    settings = get_settings()
    logger.info(
        "starting_application",
        environment=settings.environment,
        version=settings.version,
    )

    await init_db()
    logger.info("database_initialized")
    app.state.access_service = build_access_service(get_session_factory(), settings)

    yield

    app.state.access_service = None
    await close_redis()
    await close_db()
    logger.info("application_shutdown_complete")


async def _probe_database() -> str:
    try:
        async for session in get_db_session():
            await session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("health_database_unavailable", exc_info=True)
        return "unavailable"
    return "ok"


async def _probe_redis() -> str:
    try:
        r = await get_redis()
    except Exception:
        return "unavailable"
    return "ok" if r is not None else "unavailable"


def create_application() -> FastAPI:
    """Build the gateway app. The access service is attached by the lifespan."""
    settings = get_settings()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=None if settings.environment == "production" else f"{settings.api_v1_prefix}/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware Configuration
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Origin", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Remaining",
            "X-Downloads-Remaining",
            "Content-Disposition",
        ],
    )

    # Rate limiting on the access routes (skipped in development)
    app.add_middleware(RateLimitMiddleware)

    # Security headers on every response
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # ==========================================================================
    # Router Registration
    # ==========================================================================

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, object]:
        checks = {"db": await _probe_database(), "redis": await _probe_redis()}
        # Redis only backs rate limiting, which fails open.
        overall = "healthy" if checks["db"] == "ok" else "degraded"
        return {"status": overall, "version": settings.version, "checks": checks}

    app.include_router(
        access_router,
        prefix=f"{settings.api_v1_prefix}/access",
        tags=["Access"],
    )

    return app


app = create_application()
