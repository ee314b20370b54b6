"""
FastAPI application entry point for Visual Match.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from config import get_settings

# Configure logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(get_settings().log_level_number)
)

logger = structlog.get_logger()

from api.routes import router
from services.search_service import get_search_service

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Visual Match", version=settings.app_version,
                status_backend=settings.status_backend, dispatch_mode=settings.dispatch_mode)

    # Validate configuration
    issues = settings.validate_settings()
    if issues:
        for issue in issues:
            logger.warning(f"Configuration issue: {issue}")

    # Builds the status store (creating SQL tables) before the first request
    service = get_search_service()

    yield

    # Shutdown
    logger.info("Shutting down Visual Match")
    await service.aclose()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Reverse image search and visual match pipeline",
    lifespan=lifespan
)

# Include routes
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
