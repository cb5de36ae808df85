"""TermAudit Backend - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from termaudit.api import api_router
from termaudit.api.health import router as health_router
from termaudit.core import settings, setup_logging
from termaudit.core.logging import get_logger

# Import all models to ensure they're registered with Base for Alembic
from termaudit.models import (  # noqa: F401
    BlacklistRule,
    TerminalCommand,
    TerminalSession,
)
from termaudit.services.audit_retention import AuditRetentionService
from termaudit.services.recorder import Recorder
from termaudit.services.rule_cache import RuleCache
from termaudit.services.session_tracker import SessionRegistry

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    snapshot = await RuleCache.get_instance().load()
    logger.info(f"Rule cache loaded: {len(snapshot)} enabled rules (v{snapshot.version})")

    retention = AuditRetentionService.get_instance()
    await retention.start()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await SessionRegistry.get_instance().end_all("shutdown")
    await Recorder.get_instance().close_all()
    await retention.stop()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Terminal command interception and session audit",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "X-Request-ID",
            "X-User-ID",
        ],
    )

    # Include routers
    app.include_router(health_router)  # Health at root level
    app.include_router(api_router)  # API at /api

    # Root endpoint
    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


# Application instance
app = create_app()
