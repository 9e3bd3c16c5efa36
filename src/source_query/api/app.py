"""FastAPI application factory."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from source_query.api.routes import ask_router, health_router, sources_router
from source_query.api.service import Services, build_services, set_services
from source_query.config import get_settings
from source_query.errors import RateLimitError, SourceQueryError
from source_query.observability import configure_logging
from source_query.storage import init_database

logger = structlog.get_logger()


def _make_lifespan(services: Services | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        container = services or build_services()
        await init_database(container.engine)
        await container.orchestrator.recover_interrupted()
        container.pool.start()
        set_services(container)
        logger.info("service_started", workers=container.pool.size)

        yield

        # Shutdown: let queued runs finish before closing the database
        await container.orchestrator.shutdown(drain=True)
        set_services(None)
        await container.engine.dispose()
        logger.info("service_stopped")

    return lifespan


async def source_query_error_handler(request: Request, exc: SourceQueryError):
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message},
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(services: Services | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Prebuilt service container; built from settings when omitted
    """
    settings = get_settings()
    configure_logging(settings.debug)

    app = FastAPI(
        title="SourceQuery",
        description="Source ingestion and retrieval-augmented answering",
        version="0.1.0",
        lifespan=_make_lifespan(services),
    )

    # CORS for frontend
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SourceQueryError, source_query_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Register routes
    app.include_router(sources_router)
    app.include_router(ask_router)
    app.include_router(health_router)

    @app.get("/")
    async def root():
        return {
            "name": "SourceQuery",
            "version": "0.1.0",
            "docs": "/docs",
        }

    return app


# Create app instance for uvicorn
app = create_app()
