from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from authlane.api.schemas import ErrorResponse
from authlane.logging import get_logger, sanitize_error_message
from authlane.service.errors import RateLimitedError, ServerError, ServiceError

logger = get_logger(__name__)

# Stable error categories mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "invalid_input",
    401: "unauthorized",
    404: "invalid_input",
    405: "invalid_input",
    409: "conflict",
    422: "invalid_input",
    429: "rate_limited",
    500: "server_error",
    503: "unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Render the ``{error, message}`` body shared by every failure."""
    body = ErrorResponse(error=code or _error_code_for_status(status_code), message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def rate_limit_headers(exc: RateLimitedError) -> dict[str, str]:
    headers = {"Retry-After": str(exc.retry_after), "X-RateLimit-Remaining": "0"}
    if exc.limit is not None:
        headers["X-RateLimit-Limit"] = str(exc.limit)
    return headers


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for service and request errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.is_server_fault else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = rate_limit_headers(exc) if isinstance(exc, RateLimitedError) else None
        message = sanitize_error_message(exc.message)
        return error_response(exc.status_code, message, exc.error_code, headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        return error_response(400, "invalid request body", "invalid_input")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        fault = ServerError("internal server error")
        return error_response(fault.status_code, fault.message, fault.error_code)
