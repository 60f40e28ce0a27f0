"""
Puppy Reservations - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "puppies", "description": "Storefront reservation state per puppy."},
    {"name": "inquiries", "description": "Rate-limited contact form."},
    {"name": "webhooks", "description": "Stripe and PayPal payment webhooks."},
    {"name": "cron", "description": "Scheduled jobs: reservation expiry, sold puppy archive."},
    {"name": "admin", "description": "Reservation oversight and webhook ledger diagnostics."},
    {"name": "health", "description": "Liveness, readiness and webhook health."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Reservation engine for the puppy storefront: reconciles Stripe and "
        "PayPal payment webhooks into exactly one reservation per puppy."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, webhook rate limit)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    # Triggers and check constraints are PostgreSQL-only; SQLite (tests) gets create_all
    if engine.dialect.name == "postgresql":
        from app.db.migrations import run_all_migrations

        async with engine.begin() as conn:
            await run_all_migrations(conn)
        logger.info("Auto-migrations completed")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up. No dependency checks, so a DB outage does not trigger restarts.",
    tags=["health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="Database and Redis respond. status=degraded with the failing check otherwise.",
    responses={
        200: {
            "description": "All dependencies available",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "redis": "ok"}
                }
            },
        },
        503: {
            "description": "At least one dependency unavailable",
            "content": {
                "application/json": {
                    "example": {"status": "degraded", "db": "ok", "redis": "error: redis_unavailable"}
                }
            },
        },
    },
    tags=["health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
