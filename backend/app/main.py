"""Portal Gate Backend - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.router import api_router
from app.api.error_handling import register_exception_handlers
from app.core import settings
from app.core.logging import get_logger
from app.core.shared_lifespan import common_shutdown, common_startup
from app.middleware import SecurityHeadersMiddleware

# Import all models to ensure they're registered with Base for Alembic
from app.models import BackupCode, SecurityEvent, User  # noqa: F401

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    tasks = await common_startup(logger)

    yield

    logger.info("Shutting down...")
    await common_shutdown(logger, tasks)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Authentication and access-control gate for the ministry portal",
        version=settings.app_version,
        lifespan=lifespan,
        # The schema lists every admin route; only expose it while debugging
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    register_exception_handlers(app)

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on error responses too.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Accept",
            "X-CSRF-Token",
            "X-Request-ID",
        ],
    )

    app.include_router(api_router)

    return app


# Application instance
app = create_app()
