from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy import text
import asyncio
import logging
import time

from proctorhub.core.config import settings
from proctorhub.core.database import AsyncSessionLocal, create_db_and_tables
from proctorhub.core.cache import cache
from proctorhub.api.v1.api import api_router
from proctorhub.middleware.performance import PerformanceMiddleware
from proctorhub.services.session_service import SessionService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def schedule_periodic_sweep():
    """In-process janitor for deployments that run without Celery beat"""
    while True:
        await asyncio.sleep(settings.sweep_interval_seconds)
        try:
            async with AsyncSessionLocal() as db:
                await SessionService(db).sweep()
        except Exception as e:
            logger.error(f"Periodic session sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting proctoring API...")
    await create_db_and_tables()
    logger.info("Database initialized")

    if cache.enabled:
        if await cache.ahealth_check():
            logger.info("Cache connection established")
        else:
            logger.warning("Cache connection failed - push channel unavailable, clients will poll")

    sweeper = None
    if settings.background_sweep_enabled:
        sweeper = asyncio.create_task(schedule_periodic_sweep())
        logger.info(f"Session sweep scheduled every {settings.sweep_interval_seconds}s")

    yield

    logger.info("Shutting down proctoring API...")
    if sweeper is not None:
        sweeper.cancel()
    try:
        await cache.aclose()
        logger.info("Cache connections closed")
    except Exception as e:
        logger.error(f"Error closing cache connections: {e}")


app = FastAPI(
    title="Proctoring Session API",
    description="Session lifecycle, signaling relay and monitoring events for proctored assessments",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
    lifespan=lifespan,
)

app.add_middleware(
    PerformanceMiddleware,
    slow_request_threshold=settings.slow_request_threshold
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
            "request_id": getattr(request.state, 'request_id', 'unknown')
        }
    )


app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {}
    }

    if cache.enabled:
        cache_health = await cache.ahealth_check()
        health_status["services"]["cache"] = "healthy" if cache_health else "unhealthy"
    else:
        health_status["services"]["cache"] = "disabled"

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["services"]["database"] = "healthy"
    except Exception as e:
        health_status["services"]["database"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    try:
        import psutil
        health_status["system"] = {
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": psutil.virtual_memory().percent,
        }
    except Exception as e:
        health_status["system"] = f"error: {str(e)}"

    return health_status


@app.get("/metrics")
async def get_metrics():
    slow_requests = await cache.aget('slow_requests') or []
    return {
        "slow_requests_count": len(slow_requests),
        "slow_requests": slow_requests[-10:],
        "timestamp": time.time()
    }
