from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from schoolmatch.core.concurrency import drain_background_tasks
from schoolmatch.core.config import get_settings
from schoolmatch.core.errors import PrimaryWriteFailure, RecordNotFound, TimeoutFailure, ValidationFailure
from schoolmatch.core.logging import configure_logging

logger = structlog.get_logger()
settings = get_settings()

# --- Sentry ---
if settings.SENTRY_DSN:
    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=0.1,
        profiles_sample_rate=0.1,
        send_default_pii=False,
    )
    logger.info("sentry_initialized", environment=settings.SENTRY_ENVIRONMENT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    logger.info("app_startup", version="0.1.0")

    listener = None
    if settings.EVENT_FEED_ENABLED:
        import asyncpg

        from schoolmatch.core.database import async_session
        from schoolmatch.core.dependencies import get_dispatcher
        from schoolmatch.services.event_feed import EventFeedListener

        listener = EventFeedListener(get_dispatcher(), async_session, settings)
        try:
            await listener.start()
        except (OSError, asyncpg.PostgresError) as e:
            logger.warning("event_feed_start_failed", error=str(e))
            listener = None

    yield

    if listener is not None:
        await listener.stop()
    await drain_background_tasks()
    logger.info("app_shutdown")


app = FastAPI(
    title="SchoolMatch API",
    description="Teacher to school matching, candidate pipeline and notifications",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error mapping ---
@app.exception_handler(RecordNotFound)
async def record_not_found_handler(request: Request, exc: RecordNotFound):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure):
    return JSONResponse(status_code=422, content={"detail": exc.message})


@app.exception_handler(TimeoutFailure)
async def timeout_failure_handler(request: Request, exc: TimeoutFailure):
    logger.warning("request_timeout", path=request.url.path, operation=exc.operation)
    return JSONResponse(
        status_code=504,
        content={"detail": f"{exc.message}. Please try again.", "retry": True},
    )


@app.exception_handler(PrimaryWriteFailure)
async def primary_write_failure_handler(request: Request, exc: PrimaryWriteFailure):
    logger.error("request_write_failed", path=request.url.path, operation=exc.operation)
    return JSONResponse(status_code=503, content={"detail": exc.message, "retry": True})


# Register routers
from schoolmatch.api.v1.candidates import router as candidates_router
from schoolmatch.api.v1.jobs import router as jobs_router
from schoolmatch.api.v1.notifications import router as notifications_router
from schoolmatch.api.v1.teachers import router as teachers_router

app.include_router(candidates_router, prefix=settings.API_V1_PREFIX)
app.include_router(jobs_router, prefix=settings.API_V1_PREFIX)
app.include_router(teachers_router, prefix=settings.API_V1_PREFIX)
app.include_router(notifications_router, prefix=settings.API_V1_PREFIX)


@app.get("/health")
async def health():
    checks = {"version": "0.1.0"}

    try:
        from sqlalchemy import text

        from schoolmatch.core.database import async_session

        async with async_session() as session:
            await session.execute(text("SELECT 1"))
        checks["postgres"] = "ok"
    except Exception as e:
        checks["postgres"] = f"error: {e}"

    # Redis (Celery broker)
    try:
        import redis.asyncio as aioredis

        r = aioredis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    all_ok = all(v == "ok" for k, v in checks.items() if k != "version")
    checks["status"] = "ok" if all_ok else "degraded"
    return checks
