"""
Global middleware and exception handlers.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from connectors.errors import (
    CalendarNotFound,
    ConfigurationError,
    ConnectionNotFound,
    ConnectorError,
    DecryptionError,
    ExchangeFailed,
    InvalidState,
    NotAuthorized,
    ProviderError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (NotAuthorized, 403),
    (InvalidState, 400),
    (ExchangeFailed, 400),
    (ConnectionNotFound, 404),
    (CalendarNotFound, 404),
    (ConfigurationError, 503),
    (ProviderError, 502),
    (DecryptionError, 500),
)


def status_for(exc: ConnectorError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return 500


def register_middleware(app: FastAPI) -> None:
    """Attach any app-level middleware."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(ConnectorError)
    async def connector_error_handler(request: Request, exc: ConnectorError):
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %r", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=code,
            content={"detail": str(exc), "error": type(exc).__name__},
        )
