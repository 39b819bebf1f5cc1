"""FastAPI application factory for the memory service."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import MemoryConfig
from .core import MemoryService
from .metrics import MetricsMiddleware, add_metrics_endpoint
from .middleware import CorrelationIdMiddleware
from .router import build_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan context manager for startup/shutdown."""
    logger.info("Starting memory service...")
    yield
    logger.info("Shutting down memory service...")
    service: MemoryService | None = getattr(app.state, "service", None)
    if service is not None:
        service.close()
    logger.info("Memory service shutdown complete")


def create_memory_app(
    config: MemoryConfig | None = None,
    service: MemoryService | None = None,
) -> FastAPI:
    """Create and configure the memory FastAPI application.

    The store is opened here, before the first request. If it cannot be
    opened the app still starts and reports itself as not ready.

    Args:
        config: MemoryConfig instance. Defaults to the service's config, or
            to MemoryConfig.from_env() when neither is given.
        service: Pre-built service, mainly for tests.

    Raises:
        MigrationError: A schema migration failed and was rolled back.
    """
    if service is None:
        service = MemoryService(config or MemoryConfig.from_env())
    config = service.config

    app = FastAPI(
        title="AI Memory",
        description="Persistent, queryable memory bank for AI coding assistants",
        version="0.1.0",
        lifespan=_lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)
    add_metrics_endpoint(app)

    if not service.store.is_active:
        service.open()

    app.include_router(build_router(service))

    app.state.service = service
    app.state.metrics = service.metrics
    app.state.config = config

    @app.get("/healthz")
    def healthz() -> dict:
        """Health check with store and embedding status."""
        state = service.state()
        checks = {
            "store": (
                {"status": "healthy", "engine": state["engine"]}
                if state["active"]
                else {"status": "unhealthy", "error": state["inactive_reason"]}
            ),
            "embeddings": {
                "status": "degraded" if service.embeddings.degraded else "healthy",
                "backend": service.embeddings.active_backend.name,
            },
        }
        healthy = state["active"] and not service.embeddings.degraded
        return {
            "status": "ok" if healthy else "degraded",
            "service": "ai-memory",
            "version": "0.1.0",
            "checks": checks,
        }

    @app.get("/ready")
    def ready() -> dict:
        """Readiness: true once the store is open and migrated."""
        return {"ready": service.store.is_active, "service": "ai-memory"}

    return app


def create_app_from_env() -> FastAPI:
    """Create app using environment variable configuration."""
    return create_memory_app(MemoryConfig.from_env())


__all__ = ["create_memory_app", "create_app_from_env"]
