"""
Permit Payments - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from permit_payments.core.config import settings
from permit_payments.core.logging import setup_logging, get_logger
from permit_payments.core.middleware import setup_middleware, setup_exception_handlers
from permit_payments.api.routes import router as api_router
from permit_payments.db.database import AsyncSessionLocal, engine, Base

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
    {"name": "webhooks", "description": "Signed payment provider callbacks."},
    {"name": "payments", "description": "Manual reconciliation and recovery (admin)."},
    {"name": "admin", "description": "Operational statistics for the payment layer (admin)."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Payment reliability layer for vehicle circulation permits: provider client, "
        "circuit breakers, webhook retries, recovery and reconciliation."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, security headers, webhook rate limit)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Create tables, connect Redis and start the payment services"""
    from permit_payments.core.redis_client import get_redis
    from permit_payments.domain.container import PaymentServices

    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    redis = await get_redis()
    app.state.services = PaymentServices(
        settings=settings,
        redis=redis,
        session_factory=AsyncSessionLocal,
    )
    await app.state.services.start()


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    from permit_payments.core.redis_client import close_redis

    logger.info("Shutting down application")
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.stop()
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up. No dependency checks, so a database outage does not trigger restarts.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description=(
        "Checks the database, Redis, payment provider reachability and the Celery broker. "
        "Returns 503 with status=degraded when any of them fails."
    ),
    responses={
        200: {
            "description": "All dependencies reachable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "redis": "ok",
                        "payment_provider": "ok",
                        "celery": "ok",
                    }
                }
            },
        },
        503: {
            "description": "At least one dependency is unavailable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "payment_provider": "ok",
                        "celery": "ok",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from permit_payments.domain.services.health_service import check_readiness

    services = app.state.services
    result = await check_readiness(services.session_factory, services.redis)
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
