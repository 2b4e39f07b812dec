"""
Global middleware and domain-error → HTTP mapping.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from connectors.errors import (
    DecryptionError,
    DispatchError,
    EncryptionKeyMissingError,
    GatewayError,
    NotFoundError,
    OAuth2Error,
    RateLimitExceeded,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
_STATUS_BY_ERROR = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (RateLimitExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
    (OAuth2Error, status.HTTP_400_BAD_REQUEST),
    (DecryptionError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (EncryptionKeyMissingError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DispatchError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: GatewayError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and exception handlers."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug(
            "%s %s tenant=%s — %.3fs",
            request.method,
            request.url.path,
            request.headers.get("X-Tenant-ID", "-"),
            elapsed,
        )
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        return JSONResponse(
            status_code=code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )
