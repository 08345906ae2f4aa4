"""
FastAPI Application Entry Point.

This is the main application file for the Emergency Dispatch Backend.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.dependencies import build_container
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.core.redis_client import close_redis
from backend.app.db.session import dispose_engine
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Builds the service container (datastore, routing, dispatch, scheduler).
    2. Starts the presence directory and the periodic jobs.
    3. Stops tracking loops and closes connections on shutdown.
    """
    configure_logging()
    container = await build_container()
    app.state.container = container
    await container.start()
    logger.info("Dispatch backend started", extra={"datastore": settings.datastore_backend})
    yield
    await container.stop()
    await close_redis()
    await dispose_engine()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Real-time tracking and dispatch coordination for emergency medical services",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "datastore": settings.datastore_backend,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")
