"""FastAPI application entry point.

This module initializes the FastAPI application with all routes,
middleware, and lifecycle handlers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy import text

from genflow import __version__
from genflow.api.deps import EngineDep, get_db_session, get_session_maker, init_db
from genflow.api.routes import (
    dead_letters_router,
    executions_router,
    webhooks_router,
    workflows_router,
)
from genflow.config import settings
from genflow.models.workflow import Capability
from genflow.services.execution_service import build_engine, init_engine

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer() if not settings.debug else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, settings.log_level)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler.

    Builds the execution engine on startup, recovers interrupted
    executions, and stops in-process work on shutdown.
    """
    logger.info(
        "application_starting",
        host=settings.host,
        port=settings.port,
        debug=settings.debug,
        log_level=settings.log_level,
    )
    logger.info(
        "configuration_loaded",
        prediction_api_url=settings.prediction_api_url,
        prediction_api_token=settings.get_masked_key("prediction_api_token"),
        callback_url=settings.prediction_callback_url,
        heartbeat_timeout=settings.heartbeat_timeout,
    )

    if settings.database_auto_create:
        await init_db()

    engine = build_engine(settings, session_maker=get_session_maker())
    init_engine(engine)
    await engine.startup()

    yield

    logger.info("application_shutting_down")
    await engine.shutdown()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="genflow",
        description="Execution engine for graphs of long-running AI generation jobs",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        """Tag every log line emitted while serving a request."""
        request_id = request.headers.get("x-request-id") or uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    # Register API routes
    app.include_router(
        workflows_router,
        prefix="/api/v1/workflows",
        tags=["workflows"],
    )
    app.include_router(
        executions_router,
        prefix="/api/v1/executions",
        tags=["executions"],
    )
    app.include_router(
        dead_letters_router,
        prefix="/api/v1/dead-letters",
        tags=["dead-letters"],
    )
    app.include_router(
        webhooks_router,
        prefix="/api/v1/webhooks",
        tags=["webhooks"],
    )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions.

        Never expose internal error details in production.
        """
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )

        if settings.debug:
            detail = str(exc)
        else:
            detail = "An internal error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": detail, "error_type": "internal_error"},
        )

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for load balancers and monitoring."""
        return {"status": "healthy", "version": __version__}

    @app.get("/ready", tags=["health"], response_model=None)
    async def ready_check(engine: EngineDep) -> dict[str, Any] | JSONResponse:
        """Readiness check including database connectivity and lane load."""
        try:
            async for session in get_db_session():
                await session.execute(text("SELECT 1"))
            return {
                "status": "ready",
                "in_flight": {
                    c.value: engine.queue.in_flight(c) for c in Capability
                },
            }
        except Exception as e:
            logger.error("readiness_check_failed", error=str(e))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "error": "database_unavailable"},
            )

    # Instrument with OpenTelemetry
    FastAPIInstrumentor.instrument_app(app)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "genflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
