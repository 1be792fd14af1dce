"""
Gateway error taxonomy and the single place that turns errors into HTTP responses.

Components raise a `GatewayError` subclass where the condition is detected and
never build error responses themselves. Every error body has the same shape:

    {"error": "<message>"}
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    status_code: int = 500
    message: str = "Internal Server Error"
    # Faults are operationally significant and get logged; routine denials do not.
    is_fault: bool = False

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail
        super().__init__(detail or self.message)

    def headers(self) -> Dict[str, str]:
        return {}


class ForbiddenOrigin(GatewayError):
    status_code = 403
    message = "Forbidden"


class InvalidAntiForgeryToken(GatewayError):
    status_code = 403
    message = "Invalid CSRF token"


class RateLimited(GatewayError):
    status_code = 429
    message = "Too Many Requests"

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        retry_after: int = 0,
        rate_headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(detail)
        self.retry_after = max(0, int(retry_after))
        self.rate_headers = dict(rate_headers or {})

    def headers(self) -> Dict[str, str]:
        return {**self.rate_headers, "Retry-After": str(self.retry_after)}


class NotFound(GatewayError):
    status_code = 404
    message = "Not Found"


class PayloadTooLarge(GatewayError):
    status_code = 413
    message = "Payload Too Large"


class UpstreamUnavailable(GatewayError):
    status_code = 502
    message = "OAuth provider is not available"
    is_fault = True


class InternalFault(GatewayError):
    status_code = 500
    message = "Internal Server Error"
    is_fault = True


def error_response(exc: GatewayError, request: Optional[Request] = None) -> JSONResponse:
    if exc.is_fault:
        where = f"{request.method} {request.url.path}" if request is not None else "-"
        logger.error("%s (%s): %s", type(exc).__name__, where, exc.detail or exc.message)
    else:
        logger.debug("%s: %s", type(exc).__name__, exc.detail or exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=exc.headers())


def install_error_handlers(app: FastAPI) -> None:
    """Route every failure raised during dispatch through `error_response`."""

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        return error_response(exc, request)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # Router-level 404/405 from Starlette (unknown path, StaticFiles miss).
        if exc.status_code == 404:
            return error_response(NotFound(), request)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        # ServerErrorMiddleware re-raises afterwards and the server logs the traceback.
        return error_response(InternalFault(f"{type(exc).__name__}: {exc}"), request)
