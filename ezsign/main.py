"""
EzSign delivery operator API.

FastAPI application exposing health, metrics and the dead letter queue
admin endpoints. Run with: uvicorn ezsign.main:app
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ezsign.config import settings
from ezsign.database import create_engine, create_session_factory
from ezsign.logging_config import configure_logging
from ezsign.middleware.logging import LoggingMiddleware
from ezsign.queue import JobQueue, create_redis_pool
from ezsign.routes.dead_letter import router as dead_letter_router
from ezsign.routes.metrics import router as metrics_router
from ezsign.sentry_config import configure_sentry


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    job_queue: JobQueue | None = None,
) -> FastAPI:
    """
    Build the app. Handles not passed in are created from settings at
    startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        owned_queue = None
        if session_factory is None:
            engine = create_engine(settings.DATABASE_URL, echo=settings.DEBUG)
            app.state.session_factory = create_session_factory(engine)
        if job_queue is None:
            owned_queue = JobQueue(await create_redis_pool(settings.REDIS_URL))
            app.state.job_queue = owned_queue
        try:
            yield
        finally:
            if owned_queue is not None:
                await owned_queue.close()
            if engine is not None:
                await engine.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Webhook delivery, dead letter queue and reminder operations for EzSign",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.job_queue = job_queue

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)
    app.include_router(dead_letter_router)

    @app.get("/")
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Liveness check."""
        return {"status": "healthy"}

    return app


def build_app() -> FastAPI:
    # Initialize logging first
    configure_logging(settings.LOG_LEVEL)
    # Initialize Sentry (if SENTRY_DSN is set)
    configure_sentry()
    return create_app()


app = build_app()
