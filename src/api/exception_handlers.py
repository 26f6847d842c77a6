"""
Global exception handlers for FastAPI.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

import structlog

from src.core.exceptions import (
    ConfigurationError,
    ConversationEngineError,
    LLMRateLimitError,
    LLMTimeoutError,
    NotFoundError,
    SessionClosedError,
    TransientExternalError,
    ValidationError,
)

log = structlog.get_logger(__name__)


def status_code_for(exc: ConversationEngineError) -> int:
    """Map an engine error to its HTTP status code."""
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, SessionClosedError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, LLMTimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(exc, LLMRateLimitError):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(exc, TransientExternalError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(error_type: str, message: str) -> dict:
    return {"error": {"type": error_type, "message": message}}


def setup_exception_handlers(app: FastAPI):
    """Register custom exception handlers with the FastAPI application.

    Sets up handlers for all ConversationEngineError subclasses with
    appropriate HTTP status codes, plus handlers for configuration errors
    and generic exceptions.
    """

    @app.exception_handler(ConversationEngineError)
    async def engine_error_handler(
        request: Request,
        exc: ConversationEngineError,
    ) -> JSONResponse:
        """Handle ConversationEngineError exceptions with appropriate HTTP status codes."""
        log_ctx = log.bind(
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )

        status_code = status_code_for(exc)

        log_ctx.warning(
            "request_error",
            message=exc.message,
            status_code=status_code,
        )

        return JSONResponse(
            status_code=status_code,
            content=error_body(type(exc).__name__, exc.message),
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request,
        exc: ConfigurationError,
    ) -> JSONResponse:
        """Handle configuration errors with HTTP 500 status.

        The detailed message is logged, never returned to the client.
        """
        log.error(
            "configuration_error",
            path=request.url.path,
            message=exc.message,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("ConfigurationError", "Server configuration error"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Handle all unhandled exceptions with HTTP 500 status."""
        log_ctx = log.bind(
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )

        log_ctx.error(
            "unhandled_exception",
            message=str(exc),
            exc_info=exc,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("InternalServerError", "An unexpected error occurred"),
        )
