"""Exception handlers mapping portal errors to JSON error bodies."""

import logging
import secrets

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings
from app.core.cookies import clear_auth_cookies
from app.core.exceptions import PortalError

logger = logging.getLogger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    429: "too_many_requests",
}


def error_response(exc: PortalError) -> JSONResponse:
    """Render a portal error, clearing auth cookies when it asks for it."""
    response = JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(exc.to_dict()),
        headers=exc.headers or None,
    )
    if exc.clear_cookies:
        clear_auth_cookies(response)
    return response


def internal_error_response(request: Request, exc: Exception) -> JSONResponse:
    """Log an unexpected exception and render a 500.

    The exception text is only exposed outside production. Every 500 carries
    an ``error_id`` that also appears in the log line.
    """
    error_id = secrets.token_hex(6)
    logger.exception(
        f"Unhandled error {error_id} on {request.method} {request.url.path}",
        exc_info=exc,
        extra={"error_id": error_id},
    )
    body = {
        "error": "internal_error",
        "message": "An internal error occurred",
        "error_id": error_id,
    }
    if not settings.is_production:
        body["detail"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the portal error handlers on ``app``."""

    @app.exception_handler(PortalError)
    async def handle_portal_error(request: Request, exc: PortalError):
        log_fn = logger.error if exc.status_code >= 500 else logger.info
        log_fn(
            f"{exc.code} on {request.method} {request.url.path}: {exc.message}",
            extra={"status_code": exc.status_code},
        )
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "error": "request_validation_error",
                "message": "Request body failed validation",
                "details": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": _STATUS_TO_CODE.get(exc.status_code, "http_error"),
                "message": message,
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        return internal_error_response(request, exc)
