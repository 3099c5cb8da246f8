"""
FastAPI application with New Relic APM, CORS, lifespan, the completion
sweeper and all routers.
"""
import asyncio
import logging
import os

# New Relic must be initialized BEFORE any other imports that it instruments.
if os.getenv("NEW_RELIC_LICENSE_KEY"):
    import newrelic.agent
    newrelic.agent.initialize(os.getenv("NEW_RELIC_CONFIG_FILE"))

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ridepool.config import get_settings
from ridepool.dependencies import sweeper_scope
from ridepool.domain.errors import EngineError
from ridepool.redis_client import get_redis, close_redis, ping_redis
from ridepool.routers import bookings, live, payments, rides
from ridepool.services.sweeper import run_forever

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s [%s, %s store]", settings.app_name, settings.env, settings.store_backend)
    if settings.store_backend == "sql":
        await get_redis()      # warm up connection pool

    sweeper = None
    if settings.sweeper_enabled:
        sweeper = asyncio.create_task(run_forever(settings.sweep_interval_seconds, sweeper_scope))

    yield

    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
    if settings.store_backend == "sql":
        await close_redis()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Seat booking, ride lifecycle and live location for shared event rides",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    logger.info("%s %s -> %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.message, "code": exc.code.value},
    )


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url, exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# Health check (no auth)
@app.get("/health", tags=["Health"])
async def health():
    if settings.store_backend != "sql":
        return {"status": "ok", "backend": settings.store_backend}
    redis_ok = await ping_redis()
    return {"status": "ok" if redis_ok else "degraded", "backend": "sql", "redis": redis_ok}


# Register routers
app.include_router(rides.router)
app.include_router(bookings.router)
app.include_router(payments.router)
app.include_router(live.router)
