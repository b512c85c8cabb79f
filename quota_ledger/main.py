"""FastAPI application entry point.

REST API with versioned routing and consistent error handling over the
quota ledger.

This module creates and configures the FastAPI application, including:
- Logging setup
- Exception handlers for API and ledger errors
- API v1 router mounting
- Health check endpoint
"""

import logging

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from quota_ledger.api.v1.router import router as v1_router
from quota_ledger.core.config import settings
from quota_ledger.core.errors import APIError
from quota_ledger.core.responses import ErrorDetail, ErrorResponse

logger = structlog.get_logger()


def configure_logging() -> None:
    """Route stdlib and structlog output through one root handler."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses.

    Headers added:
    - X-Content-Type-Options: Prevents MIME sniffing
    - Cache-Control: Balances and ledger history must never be cached
    - Content-Security-Policy: Restricts resource loading (API returns no HTML)
    - Strict-Transport-Security: Forces HTTPS (production only)
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Add security headers to response."""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"

        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store, max-age=0"

        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )

        # HSTS only in production (assumes HTTPS via reverse proxy)
        if settings.environment == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


def api_error_handler(_request: Request, exc: APIError) -> JSONResponse:
    """Handle API and ledger errors.

    Args:
        request: The incoming request.
        exc: The APIError that was raised.

    Returns:
        JSONResponse with error envelope and appropriate status code.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=exc.code,
                message=exc.message,
                details=exc.details,
            )
        ).model_dump(),
    )


def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's validation errors to the standard envelope (400)."""
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="VALIDATION_ERROR",
                message="Request validation failed",
                details=[
                    {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                    for e in exc.errors()
                ],
            )
        ).model_dump(),
    )


def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions.

    Returns 500 INTERNAL_ERROR without exposing stack traces; the exception
    is logged server-side.
    """
    logger.exception("Unhandled exception", exc_info=exc, path=str(request.url.path))

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="INTERNAL_ERROR",
                message="An unexpected error occurred",
            )
        ).model_dump(),
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    configure_logging()

    app = FastAPI(
        title="Quota Ledger API",
        version="1.0.0",
        description="Multi-pool quota ledger: grants, FIFO consumption, refunds",
    )

    # Middleware order: Starlette uses LIFO, so the LAST added runs FIRST.
    # CORS must run first to handle preflight requests, so add it last.
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "X-Request-ID"],
    )

    # Order matters: specific handlers first, then catch-all
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    app.include_router(v1_router, prefix="/api/v1")

    # Health check endpoint (outside versioned API)
    @app.get("/health")
    def health_check() -> dict:
        """Health check endpoint for monitoring.

        Returns:
            {"status": "healthy"} if service is running.
        """
        return {"status": "healthy"}

    return app


# Create the application instance
# Used by uvicorn: uvicorn quota_ledger.main:app
app = create_app()
