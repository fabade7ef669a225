"""
FastAPI Production Application

Main entry point for the PageLens Analytics API.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from pagelens.analytics.errors import InvalidRequestError, PageLensError, UnexpectedError
from pagelens.config import get_settings
from pagelens.config.logging import configure_logging
from pagelens.database.connection import close_database, init_database
from pagelens.serving.api.dependencies import (
    build_orchestrator,
    close_http_client,
    init_http_client,
    shutdown_orchestrator,
)
from pagelens.serving.api.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from pagelens.serving.api.routes import (
    analytics_router,
    auth_router,
    catalog_router,
    export_router,
    health_router,
)
from pagelens.serving.cache import close_redis, init_redis

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    settings = get_settings()

    logger.info("Starting PageLens Analytics API", environment=settings.app_env, version=settings.version)

    try:
        await init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.warning("Database init failed", error=str(e))

    # Results are recomputed on every request while Redis is down
    try:
        await init_redis()
        logger.info("Redis initialized")
    except Exception as e:
        logger.warning("Redis init failed", error=str(e))

    await init_http_client()
    build_orchestrator()

    yield

    logger.info("Shutting down...")
    await shutdown_orchestrator()
    await close_http_client()
    await close_database()
    await close_redis()


# =============================================================================
# ERROR HANDLERS
# =============================================================================

async def pagelens_error_handler(request: Request, exc: PageLensError) -> JSONResponse:
    if isinstance(exc, UnexpectedError):
        logger.error("Request failed", path=request.url.path, error=exc.message, **exc.context)
    else:
        logger.info("Request rejected", path=request.url.path, code=exc.code, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Request body rejected", path=request.url.path, errors=exc.errors())
    error = InvalidRequestError("Invalid request body")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", path=request.url.path, error_type=type(exc).__name__)
    error = UnexpectedError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    settings = get_settings()

    app = FastAPI(
        title="PageLens Analytics API",
        description="Per-page storefront performance comparison",
        version=settings.version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.add_exception_handler(PageLensError, pagelens_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.is_production)

    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router, tags=["Auth"])
    app.include_router(analytics_router, tags=["Analytics"])
    app.include_router(catalog_router, tags=["Catalog"])
    app.include_router(export_router, tags=["Export"])

    return app


app = create_app()


def serve() -> None:
    """Console entry point: single-process uvicorn server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    serve()
