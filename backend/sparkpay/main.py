"""
Spark Checkout API

Payment reconciliation and inventory consistency for ticket and pickup orders:
- Atomic capacity / stock reservations with compensating rollback at checkout
- Idempotent payment side effects driven by webhooks, client sync and a
  reconciliation sweep
- Redis-cached availability reads
- Structured logging with request and order correlation, Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.api.middleware import RequestLoggingMiddleware
from sparkpay.api.router import api_router
from sparkpay.core.config import get_settings
from sparkpay.core.logging import get_logger, setup_logging
from sparkpay.core.metrics import metrics_endpoint
from sparkpay.db.session import engine, get_db
from sparkpay.infrastructure.payment_gateway import GatewayConfigError
from sparkpay.services.cache_service import close_redis, get_cache_stats, get_redis

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        gateway_production=settings.MIDTRANS_IS_PRODUCTION,
    )
    if not settings.MIDTRANS_SERVER_KEY:
        logger.warning("gateway_not_configured", message="Checkout, sync and webhooks will fail")
    if not settings.CRON_SECRET:
        logger.warning("cron_secret_not_set", message="Maintenance routes accept any caller")

    # Warm the cache connection; a failure only disables caching
    if await get_redis() is None and settings.REDIS_ENABLED:
        logger.warning("redis_unavailable", message="Serving availability from the database")

    yield

    await close_redis()
    await engine.dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Checkout, payment reconciliation and inventory consistency for tickets and pickup orders",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Cron-Secret"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed input is a 400 for every client of this API."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(GatewayConfigError)
async def gateway_config_exception_handler(request: Request, exc: GatewayConfigError):
    logger.error("gateway_config_error", error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Payment gateway is not configured"},
    )


app.include_router(api_router)


@app.get("/metrics", include_in_schema=False)
def metrics():
    return metrics_endpoint()


@app.get("/health", tags=["Health"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """Liveness plus the state of the database and the availability cache."""
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("health_database_error", error=str(e))
        database = "error"

    body = {
        "status": "healthy" if database == "ok" else "degraded",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "database": database,
        "gateway": "production" if settings.MIDTRANS_IS_PRODUCTION else "sandbox",
        "cache": await get_cache_stats(),
    }
    code = status.HTTP_200_OK if database == "ok" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=body)


@app.get("/", tags=["Root"])
async def root():
    return {"name": settings.APP_NAME, "version": settings.APP_VERSION, "docs": "/docs"}
