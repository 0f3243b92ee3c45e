"""FastAPI application setup"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from discovery_engine import __version__
from discovery_engine.api.routes import router
from discovery_engine.api.middleware import setup_cors, setup_rate_limiting
from discovery_engine.db.connection import db
from discovery_engine.config import LOG_LEVEL, validate_config
from discovery_engine.exceptions import (
    ConfigurationError,
    DiscoveryEngineError,
    RecordNotFoundError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO)
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application"""
    # Startup
    logger.info("Starting discovery engine API...")
    try:
        validate_config()
    except ValueError as e:
        raise ConfigurationError(message=str(e), operation="startup") from e

    await db.init_pool()
    logger.info("Database pool initialized")

    yield

    # Shutdown
    logger.info("Shutting down discovery engine API...")
    await db.close_pool()
    logger.info("Database pool closed")


def error_status_code(exc: DiscoveryEngineError) -> int:
    """HTTP status for an engine error"""
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, RecordNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if exc.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_api_application() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Discovery Engine API",
        description="Mines a health journal for flare triggers and patterns",
        version=__version__,
        lifespan=lifespan
    )

    # Setup middleware
    setup_cors(app)
    setup_rate_limiting(app)

    # Include routes
    app.include_router(router)

    @app.exception_handler(DiscoveryEngineError)
    async def discovery_engine_exception_handler(request: Request, exc: DiscoveryEngineError):
        return JSONResponse(
            status_code=error_status_code(exc),
            content=exc.to_dict()
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": str(exc)}
        )

    logger.info("FastAPI application created")

    return app
