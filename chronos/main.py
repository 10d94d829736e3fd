"""
Main FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from chronos import __version__
from chronos.core.config import settings
from chronos.core.env_validation import validate_environment, validate_or_exit
from chronos.core.exceptions import ChronosError, ContentNotFoundError, SearchError
from chronos.core.logging import get_logger, setup_logging
from chronos.db.redis import check_redis_health
from chronos.db.session import check_db_health, init_db

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan events.
    Handles startup and shutdown tasks.
    """
    from chronos.container import build_container, shutdown_embedding_provider

    # Startup
    logger.info(
        "starting_application",
        app_name=settings.APP_NAME,
        environment=settings.APP_ENV,
        version=__version__,
    )

    if settings.is_production:
        validate_or_exit()
    else:
        is_valid, errors = validate_environment()
        if not is_valid:
            logger.warning("environment_validation_failed", errors=errors)

    container = build_container(settings, pooled=True)
    await init_db(container.engine)
    app.state.container = container

    yield

    # Shutdown
    logger.info("shutting_down_application")

    app.state.container = None
    await container.aclose()
    await shutdown_embedding_provider()


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Media transcript processing and semantic search API",
        version=__version__,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    # Add middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Health check endpoint
    @app.get("/health", tags=["health"])
    async def health_check(request: Request) -> JSONResponse:
        """
        Health check endpoint for monitoring.
        Includes database and Redis connectivity checks.
        """
        container = getattr(request.app.state, "container", None)
        db_healthy = container is not None and await check_db_health(container.engine)
        redis_healthy = container is not None and await check_redis_health(container.redis)
        healthy = db_healthy and redis_healthy

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "app_name": settings.APP_NAME,
                "environment": settings.APP_ENV,
                "version": __version__,
                "database": "connected" if db_healthy else "disconnected",
                "redis": "connected" if redis_healthy else "disconnected",
            }
        )

    @app.get("/", tags=["root"])
    async def root() -> JSONResponse:
        """
        Root endpoint.
        """
        return JSONResponse(
            content={
                "message": f"Welcome to {settings.APP_NAME} API",
                "version": __version__,
                "docs": "/docs" if settings.DEBUG else "Documentation disabled in production",
            }
        )

    # Include API routers
    from chronos.api import api_router
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    @app.exception_handler(ContentNotFoundError)
    async def content_not_found_handler(request: Request, exc: ContentNotFoundError) -> JSONResponse:
        return _error(404, exc.code, str(exc))

    @app.exception_handler(SearchError)
    async def search_error_handler(request: Request, exc: SearchError) -> JSONResponse:
        logger.warning("search_failed", error=str(exc), path=request.url.path)
        return _error(503, exc.code, "Search is temporarily unavailable. Please try again later.")

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error(400, "invalid_request", str(exc))

    @app.exception_handler(ChronosError)
    async def chronos_error_handler(request: Request, exc: ChronosError) -> JSONResponse:
        logger.error("request_failed", error=str(exc), code=exc.code, path=request.url.path)
        return _error(500, exc.code, "The request could not be completed.")

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        return _error(500, "internal_server_error", "An unexpected error occurred. Please try again later.")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chronos.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
