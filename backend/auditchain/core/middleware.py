"""
FastAPI exception handlers and middleware.

Every error leaves the service in the same JSON envelope
(``{"error": {"code", "message", "detail"}}``) with the request's
correlation id, whether it is an AppError, a request validation failure
or an unexpected exception.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from auditchain.core.errors import AppError, ErrorCode

_log = structlog.get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


def _correlation_headers(request: Request) -> dict[str, str]:
    return {CORRELATION_HEADER: getattr(request.state, "correlation_id", "")}


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Injects a correlation ID into every request/response cycle.

    Taken from the ``X-Correlation-ID`` request header when the caller sends
    one, otherwise a new UUID4. It is bound into the structlog context, so
    chain log events (appends, breaks, rotations) carry it too.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )
        request.state.correlation_id = correlation_id

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)

        response.headers[CORRELATION_HEADER] = correlation_id
        _log.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Audit data is sensitive: never cacheable, never framed."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response


# ── Exception handlers ────────────────────────────────────────────────── #


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Convert a domain AppError to a structured JSON response."""
    log = _log.error if exc.http_status >= 500 else _log.warning
    log(
        "application_error",
        error_code=exc.code.value,
        message=exc.message,
        http_status=exc.http_status,
    )
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
        headers=_correlation_headers(request),
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed requests in the common error envelope."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
    ]
    _log.info("request_validation_failed", errors=len(errors))
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": ErrorCode.VALIDATION_ERROR.value,
                "message": "Request validation failed",
                "detail": {"errors": errors},
            }
        },
        headers=_correlation_headers(request),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    Never leaks internal detail (or key material) to the client.
    """
    _log.exception("unhandled_exception", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected internal error occurred.",
                "detail": {},
            }
        },
        headers=_correlation_headers(request),
    )
