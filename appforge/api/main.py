"""FastAPI application configuration and setup.

Main entry point for the HTTP API with correlation IDs, error envelopes
and sandbox registry lifecycle management.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from appforge import __version__
from appforge.api.routes import api_router
from appforge.exceptions import (
    AppForgeError,
    MaterializationError,
    PolicyViolationError,
    SandboxConflictError,
    SandboxNotFoundError,
)
from appforge.logging_config import configure_logging
from appforge.sandbox.registry import SandboxRegistry
from appforge.settings import Settings, get_settings

# Context variable for correlation ID (thread-safe, async-safe)
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Singleton app instance
_app: FastAPI | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    - Startup: create the sandbox registry and its workspace root
    - Shutdown: stop every sandbox (cancels timers, kills units, removes workspaces)
    """
    settings: Settings = app.state.settings
    registry: SandboxRegistry | None = getattr(app.state, "registry", None)
    if registry is None:
        registry = SandboxRegistry(settings)
        app.state.registry = registry

    await registry.startup()
    try:
        yield
    finally:
        await registry.shutdown()


def create_app(
    settings: Settings | None = None,
    registry: SandboxRegistry | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Optional settings override (uses get_settings() if not provided)
        registry: Optional pre-built registry (tests inject one with fake units)

    Returns:
        Configured FastAPI application
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="AppForge",
        description="Sandboxed execution engine for generated applications",
        version=__version__,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if registry is not None:
        app.state.registry = registry

    # Add correlation ID middleware (must be before routes)
    app.middleware("http")(_correlation_middleware)

    app.include_router(api_router, prefix="/api/v1")

    _register_exception_handlers(app, settings)

    return app


async def _correlation_middleware(request: Request, call_next):
    """Middleware to generate and propagate correlation IDs.

    Args:
        request: FastAPI request object
        call_next: Next middleware/handler in the chain

    Returns:
        Response with X-Correlation-ID header
    """
    correlation_id = request.headers.get("X-Correlation-ID")
    if not correlation_id:
        correlation_id = str(uuid.uuid4())

    _correlation_id.set(correlation_id)

    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


def get_correlation_id() -> str | None:
    """Get the current request's correlation ID from context."""
    return _correlation_id.get()


def _status_for(exc: AppForgeError) -> int:
    if isinstance(exc, PolicyViolationError):
        return 422
    if isinstance(exc, MaterializationError):
        return 400
    if isinstance(exc, SandboxConflictError):
        return 409
    if isinstance(exc, SandboxNotFoundError):
        return 404
    return 500


def _error_response(
    status_code: int,
    message: Any,
    error_type: str,
    correlation_id: str,
    **extra: Any,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": status_code,
                "message": message,
                "type": error_type,
                "correlation_id": correlation_id,
                **extra,
            }
        },
        headers={"X-Correlation-ID": correlation_id},
    )


def _register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Register custom exception handlers.

    Args:
        app: FastAPI application
        settings: Settings controlling message sanitization
    """

    @app.exception_handler(AppForgeError)
    async def appforge_error_handler(
        request: Request,
        exc: AppForgeError,
    ) -> JSONResponse:
        """Handle engine errors with correlation ID."""
        correlation_id = get_correlation_id() or exc.correlation_id
        error_type = exc.__class__.__name__.replace("Error", "_error").lower()
        status_code = _status_for(exc)

        logger = structlog.get_logger()
        if status_code >= 500:
            logger.error(
                "AppForge error",
                error_type=error_type,
                correlation_id=correlation_id,
                exc_info=exc,
            )
        else:
            logger.info(
                "Request rejected",
                error_type=error_type,
                status_code=status_code,
                correlation_id=correlation_id,
            )

        # Client errors are actionable; server errors are sanitized outside debug.
        if status_code < 500 or settings.debug:
            message = str(exc)
        else:
            message = f"An error occurred. Correlation ID: {correlation_id}"

        extra: dict[str, Any] = {}
        if isinstance(exc, PolicyViolationError):
            extra["violations"] = [v.model_dump() for v in exc.violations]
        return _error_response(status_code, message, error_type, correlation_id, **extra)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request,
        exc: HTTPException,
    ) -> JSONResponse:
        """Handle HTTP exceptions with consistent format."""
        correlation_id = get_correlation_id() or str(uuid.uuid4())
        return _error_response(exc.status_code, exc.detail, "http_error", correlation_id)

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        correlation_id = get_correlation_id() or str(uuid.uuid4())

        logger = structlog.get_logger()
        logger.exception(
            "Unhandled exception",
            correlation_id=correlation_id,
            exc_info=exc,
        )

        detail = str(exc) if settings.debug else "Internal server error"
        return _error_response(500, detail, "internal_error", correlation_id)


def get_app() -> FastAPI:
    """Get or create the singleton FastAPI application.

    Returns:
        FastAPI application instance
    """
    global _app
    if _app is None:
        configure_logging()
        _app = create_app()
    return _app


# For uvicorn: use "appforge.api.main:get_app" with --factory flag,
# or "appforge.api.main:app" which lazily initializes on first access.
def __getattr__(name: str) -> Any:
    """Module-level __getattr__ for lazy app initialization.

    Only creates the app when 'app' is accessed, not at import time.
    """
    if name == "app":
        return get_app()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
