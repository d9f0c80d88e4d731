"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8080

Or from the project root:
    python -m backend.app.main
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import ConfigurationError, register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.database import close_db, get_session_factory, init_db
from backend.app.core.cache import SentMessageCache, connect_redis

# ── Services ──
from backend.app.alerts.notifier import AlertNotifier
from backend.app.messages.delivery_service import MessageService
from backend.app.messages.repository import MessageRepository
from backend.app.messages.seed import seed_test_data
from backend.app.messages.transport import WebhookTransport
from backend.app.scheduler.scheduler import MessageScheduler

# ── API routers ──
from backend.app.api.v1.messages import router as messages_router
from backend.app.api.v1.scheduler import router as scheduler_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire services onto app.state, then tear them down in reverse order."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )

    missing = settings.missing_secrets()
    if missing:
        raise ConfigurationError(
            f"required settings are not configured: {', '.join(missing)}",
            missing=missing,
        )

    await init_db()
    repository = MessageRepository(get_session_factory())

    cache = None
    if settings.REDIS_ENABLED:
        client = await connect_redis(settings.REDIS_URL)
        if client is not None:
            cache = SentMessageCache(client)
    else:
        logger.info("Redis disabled, sent-message caching off")

    transport = WebhookTransport.from_settings()
    service = MessageService(repository, transport, cache)
    notifier = AlertNotifier()
    scheduler = MessageScheduler(service, notifier)

    app.state.message_service = service
    app.state.scheduler = scheduler
    app.state.cache = cache

    if settings.SEED_DATA:
        await seed_test_data(repository)

    if settings.AUTO_START_SCHEDULER:
        await scheduler.start()

    try:
        yield
    finally:
        logger.info("Shutting down %s", settings.APP_NAME)
        try:
            await asyncio.wait_for(scheduler.stop(), timeout=settings.SHUTDOWN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(
                "Scheduler did not stop within %.1fs, continuing shutdown",
                settings.SHUTDOWN_TIMEOUT_SECONDS,
            )
        await notifier.drain(timeout=settings.SHUTDOWN_TIMEOUT_SECONDS)
        await notifier.close()
        await transport.close()
        if cache is not None:
            await cache.close()
        await close_db()


# ── Create application ──

def create_app(lifespan_handler=lifespan) -> FastAPI:
    """Build the application; tests pass their own lifespan to wire fakes."""
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Periodic message delivery service. "
            "Sends queued messages to a delivery webhook in small batches, "
            "tracks pending / sent / failed state, caches delivery metadata "
            "in Redis, alerts when every delivery keeps failing, and "
            "lets failed messages be replayed."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan_handler,
    )

    # ── Middleware stack (order matters — outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(messages_router)
    app.include_router(scheduler_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": ["messages", "scheduler", "alerts"],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(
            cache=getattr(app.state, "cache", None),
            scheduler=getattr(app.state, "scheduler", None),
        )
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(
            cache=getattr(app.state, "cache", None),
            scheduler=getattr(app.state, "scheduler", None),
        )
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.app.main:app", host=settings.HOST, port=settings.PORT)
