"""
FastAPI application factory with middleware, CORS, request tracing and
error mapping.
"""

import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crmsync.config import get_settings
from crmsync.connectors.xero_client import XeroAPIError, XeroAuthError, XeroRateLimitError
from crmsync.engine.enrichment import EnrichmentError
from crmsync.routers import auth, connection, enrichment, sync, system
from crmsync.storage import StorageError
from crmsync.utils.logging import configure_logging, get_logger

# Configure logging at module level
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    settings = get_settings()

    logger.info("application_startup", version=app.version, dev_mode=settings.dev_mode)

    Path(settings.db_path).parent.mkdir(parents=True, exist_ok=True)

    yield

    logger.info("application_shutdown")


def _error(status_code: int, message: str, **headers: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message},
        headers=headers or None,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors onto HTTP responses."""

    @app.exception_handler(XeroAuthError)
    async def xero_auth_error_handler(request: Request, exc: XeroAuthError):
        logger.warning("xero_reconnect_required", path=request.url.path, error=str(exc))
        return _error(401, f"Xero reconnect required: {exc}")

    @app.exception_handler(XeroRateLimitError)
    async def xero_rate_limit_handler(request: Request, exc: XeroRateLimitError):
        logger.warning("xero_rate_limited_request", path=request.url.path)
        return _error(
            429,
            "Xero rate limit reached; try again later",
            **{"Retry-After": str(int(round(exc.retry_after)))},
        )

    @app.exception_handler(XeroAPIError)
    async def xero_api_error_handler(request: Request, exc: XeroAPIError):
        logger.error("xero_api_error", path=request.url.path, status_code=exc.status_code)
        return _error(502, str(exc))

    @app.exception_handler(EnrichmentError)
    async def enrichment_error_handler(request: Request, exc: EnrichmentError):
        logger.error("enrichment_unavailable", path=request.url.path, error=str(exc))
        return _error(503, str(exc))

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("storage_error", path=request.url.path, error=str(exc))
        return _error(500, str(exc))


def create_app() -> FastAPI:
    """
    Application factory.
    Creates and configures FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Xero CRM Sync API",
        description="Resumable Xero import and invoice enrichment for a trade-business CRM",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    # Request tracing middleware
    @app.middleware("http")
    async def request_tracing_middleware(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "request_id": request_id,
                },
                headers={"X-Request-ID": request_id},
            )

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response

    register_exception_handlers(app)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        return {"status": "healthy", "version": app.version}

    # Include routers
    app.include_router(auth.router, prefix="/api/v1/auth", tags=["Authentication"])
    app.include_router(connection.router, prefix="/api/v1/connection", tags=["Connection"])
    app.include_router(sync.router, prefix="/api/v1/sync", tags=["Sync"])
    app.include_router(enrichment.router, prefix="/api/v1/enrichment", tags=["Enrichment"])
    app.include_router(system.router, prefix="/api/v1/system", tags=["System"])

    logger.info("application_configured", routers_count=5)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "crmsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
