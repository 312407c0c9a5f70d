"""
Global middleware and exception handlers.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from connectors.errors import (
    AuthorizationError,
    ConfigurationError,
    ConnectionNotFoundError,
    CorruptionError,
    DisconnectError,
    ExpiryExhausted,
    IntegrationError,
    ProviderError,
    StorageError,
)

logger = logging.getLogger(__name__)

# Most specific first.
_STATUS_FOR_ERROR = (
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (ConnectionNotFoundError, status.HTTP_404_NOT_FOUND),
    (ExpiryExhausted, status.HTTP_401_UNAUTHORIZED),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (DisconnectError, status.HTTP_502_BAD_GATEWAY),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (CorruptionError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(exc: IntegrationError) -> int:
    for error_type, code in _STATUS_FOR_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and map integration errors onto HTTP responses."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(IntegrationError)
    async def integration_error_handler(request: Request, exc: IntegrationError):
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.to_dict())
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.error_code)
        # ProviderError.message carries connector/action context; storage and
        # configuration details stay server-side.
        detail = exc.message if isinstance(exc, ProviderError) else exc.user_message
        return JSONResponse(
            status_code=code,
            content={"error_code": exc.error_code, "detail": detail},
        )
