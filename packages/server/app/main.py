"""
Foundly Membership API Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.database import init_db, ping_database
from app.core.exception_handlers import register_exception_handlers
from app.core.redis import close_redis, ping_redis
from app.api.v1 import router as api_v1_router
from app.api.v1.auth import router as auth_router

settings = get_settings()
log = structlog.get_logger()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Foundly Membership",
        description="Organizations, join codes and the members that belong to them.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    register_exception_handlers(app)

    # Auth routes (not org-scoped)
    app.include_router(auth_router, prefix="/auth", tags=["Authentication"])

    # API routes
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: the database (SQL backend) and Redis (when events are on)."""
        checks = {}
        if settings.store_backend == "sql":
            checks["database"] = await ping_database()
        if settings.membership_events_enabled:
            checks["redis"] = await ping_redis()
        ready = all(checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ready" if ready else "unavailable", "checks": checks},
        )

    @app.on_event("startup")
    async def on_startup():
        log.info("Foundly membership starting", store_backend=settings.store_backend)
        if settings.store_backend == "sql" and settings.debug:
            await init_db()

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("Foundly membership shutting down")
        await close_redis()

    return app


app = create_app()
