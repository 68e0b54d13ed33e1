"""
LedgerLink Accounting Integrations
FastAPI Application Entry Point
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.core.errors import global_exception_handler, integration_exception_handler
from app.core.rate_limit import limiter
from app.database import async_session_factory, close_db
from app.integrations.container import IntegrationContainer, build_container
from app.integrations.exceptions import IntegrationError
from app.integrations.router import router as integrations_router
from app.integrations.router import webhook_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)


def create_application(container: Optional[IntegrationContainer] = None) -> FastAPI:
    """
    Application factory.
    Creates and configures the FastAPI application.

    Args:
        container: Pre-built integration components (tests pass in-memory
            ones); built from settings and the database when None
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """
        Application lifespan handler.
        Manages startup and shutdown of application resources.
        """
        # Startup
        logger.info("Starting %s v%s (%s)", settings.app_name, settings.app_version, settings.environment)
        integrations = container or build_container(settings, async_session_factory)
        app.state.integrations = integrations

        if settings.sweeper_enabled:
            integrations.scheduler.start()

        yield

        # Shutdown
        await integrations.scheduler.stop()
        if container is None:
            logger.info("Closing database connections...")
            await close_db()
        logger.info("%s shutdown complete", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="OAuth token lifecycle and record sync for QuickBooks, Xero and Wave",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Configure rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Configure error handling
    app.add_exception_handler(IntegrationError, integration_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routers
    register_routers(app)

    return app


def register_routers(app: FastAPI) -> None:
    """
    Register all API routers.
    """
    # Health check endpoint (always available)
    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint for monitoring."""
        integrations = getattr(app.state, "integrations", None)
        return {
            "status": "healthy",
            "app": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "sweeper_running": bool(integrations and integrations.scheduler.running),
        }

    # Integrations
    app.include_router(integrations_router)
    app.include_router(webhook_router)


# Create the application instance
app = create_application()


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
