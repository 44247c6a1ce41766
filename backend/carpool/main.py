"""
Carpool Booking API - Main Application Entry Point

Ride offers and seat reservations for a university carpool:
- Concurrency-safe seat inventory with optimistic locking
- Transactional change-feed outbox driving email notifications
- Redis caching with explicit key invalidation
- Structured logging with request correlation
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from carpool.api.exception_handlers import register_exception_handlers
from carpool.api.middleware import RequestLoggingMiddleware
from carpool.api.router import api_router
from carpool.container import build_container
from carpool.core.config import get_settings
from carpool.core.logging import setup_logging, get_logger
from carpool.core.metrics import metrics_endpoint
from carpool.db.session import create_engine, create_session_factory
from carpool.services.cache_service import create_redis

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging(settings)
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    redis_client = await create_redis(settings)
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Running without cache")

    engine = create_engine(settings)
    container = build_container(settings, engine, create_session_factory(engine), redis_client)
    app.state.container = container

    poller = None
    if settings.CHANGE_FEED_POLL_SECONDS > 0:
        poller = asyncio.create_task(
            container.change_feed.run_forever(settings.CHANGE_FEED_POLL_SECONDS)
        )

    yield

    # Cleanup
    if poller:
        poller.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await poller
    await engine.dispose()
    if redis_client:
        await redis_client.aclose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Carpool ride offers and seat reservations with change-driven notifications",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)

register_exception_handlers(app)

# Routes
app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    container = app.state.container
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "cache": await container.cache.stats(),
        "notifications": "configured" if container.publisher.configured else "disabled",
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
