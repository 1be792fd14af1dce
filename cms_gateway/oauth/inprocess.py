from __future__ import annotations

import importlib
from typing import Any, Optional

import httpx
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from cms_gateway.config import ConfigError
from cms_gateway.oauth.base import read_body, to_starlette_response, upstream_headers, upstream_target

# Never resolved; the ASGI transport hands requests straight to the app.
_INTERNAL_BASE_URL = "http://oauth.internal"


def load_asgi_app(spec: str) -> ASGIApp:
    """Import `package.module:attribute` and return the ASGI application it names."""
    module_name, _, attr = (spec or "").partition(":")
    if not module_name or not attr:
        raise ConfigError(f"OAUTH_APP must look like 'module:attribute', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import OAuth app module {module_name!r}: {e}") from e
    app: Any = module
    for part in attr.split("."):
        app = getattr(app, part, None)
        if app is None:
            raise ConfigError(f"{module_name!r} has no attribute {attr!r}")
    if not callable(app):
        raise ConfigError(f"{spec!r} is not an ASGI application")
    return app


class InProcessOAuthBridge:
    """
    Calls the OAuth subsystem's ASGI app directly, with no network hop.

    The app shares the gateway's failure domain: an exception inside it
    propagates unchanged and ends up as a 500, not a 502.
    """

    def __init__(self, app: ASGIApp, *, max_body_bytes: Optional[int] = None) -> None:
        self._app = app
        self._max_body = max_body_bytes
        self._client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url=_INTERNAL_BASE_URL,
            follow_redirects=False,
        )

    async def forward(self, request: Request) -> Response:
        body = await read_body(request, self._max_body)
        upstream = await self._client.request(
            request.method,
            upstream_target(request),
            headers=upstream_headers(request),
            content=body,
        )
        return to_starlette_response(upstream)

    async def aclose(self) -> None:
        await self._client.aclose()
