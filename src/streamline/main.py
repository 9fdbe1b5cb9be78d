"""Streamline - FastAPI application

Serves the journal reader, abort and turn endpoints. Redis must be reachable
at startup; providers are built lazily on first use.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Optional

import redis.asyncio as redis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from streamline.api import router as api_router
from streamline.config import Settings, get_settings
from streamline.providers.factory import get_provider_factory
from streamline.services.stream_service import StreamService
from streamline.storage.redis_store import close_redis, get_redis, init_redis
from streamline.utils.logging import setup_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager"""
    settings = app.state.settings
    logger.info("Starting Streamline", version=settings.app_version)

    try:
        await init_redis(settings.redis_url)
    except redis.RedisError as e:
        logger.error("Failed to initialize Streamline", error=str(e), error_type=type(e).__name__)
        raise

    if getattr(app.state, "stream_service", None) is None:
        app.state.stream_service = StreamService(factory=get_provider_factory())
    logger.info("Streamline startup complete", api_host=settings.api_host, api_port=settings.api_port)

    yield

    logger.info("Shutting down Streamline")
    await close_redis()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Normalized streaming for AI providers with a replayable event journal",
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )
    app.state.settings = settings
    app.state.stream_service = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health():
        """Redis connectivity and process liveness"""
        try:
            await get_redis().ping()
            redis_status = "healthy"
        except (RuntimeError, redis.RedisError) as e:
            logger.warning("Health check failed", component="redis", error=str(e))
            redis_status = "unhealthy"

        healthy = redis_status == "healthy"
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "version": settings.app_version,
                "timestamp": datetime.utcnow().isoformat(),
                "services": {"redis": redis_status},
            },
        )

    return app
