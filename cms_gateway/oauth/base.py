from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Tuple

import httpx
from starlette.requests import Request
from starlette.responses import Response

from cms_gateway.errors import PayloadTooLarge

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# Recomputed by httpx (request) / Starlette (response); the body is already decoded.
_REQUEST_SKIP = HOP_BY_HOP_HEADERS | {"host", "content-length"}
_RESPONSE_SKIP = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


class OAuthBridge(Protocol):
    """
    Routes `/auth*` and `/callback*` traffic to the OAuth subsystem.

    Implementations must keep the original path and query string intact so the
    subsystem sees the same URL the browser requested.
    """

    async def forward(self, request: Request) -> Response:
        """
        Forward one request and return the subsystem's response.

        Only transport-backed bridges raise `UpstreamUnavailable`; an in-process
        bridge lets faults propagate as ordinary internal errors.
        """

    async def aclose(self) -> None:
        """Release client resources. Called once at gateway shutdown."""


def upstream_target(request: Request) -> str:
    """Original path (still percent-encoded) plus query string."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.url.query
    return f"{path}?{query}" if query else path


async def read_body(request: Request, limit: Optional[int] = None) -> bytes:
    """Buffer the request body, raising `PayloadTooLarge` as soon as it exceeds `limit` bytes."""
    chunks: List[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if limit is not None and size > limit:
            raise PayloadTooLarge(f"body>{limit}")
        chunks.append(chunk)
    return b"".join(chunks)


def upstream_headers(request: Request) -> List[Tuple[str, str]]:
    headers: List[Tuple[str, str]] = [
        (k, v) for k, v in request.headers.items() if k.lower() not in _REQUEST_SKIP
    ]
    client_host = request.client.host if request.client else ""
    prior = request.headers.get("x-forwarded-for")
    forwarded: Dict[str, str] = {
        "x-forwarded-for": f"{prior}, {client_host}" if prior else client_host,
        "x-forwarded-proto": request.headers.get("x-forwarded-proto") or request.url.scheme,
        "x-forwarded-host": request.headers.get("x-forwarded-host") or request.headers.get("host", ""),
    }
    headers = [(k, v) for k, v in headers if k.lower() not in forwarded]
    headers.extend((k, v) for k, v in forwarded.items() if v)
    return headers


def to_starlette_response(upstream: httpx.Response) -> Response:
    response = Response(content=upstream.content, status_code=upstream.status_code)
    for name, value in upstream.headers.multi_items():
        if name.lower() in _RESPONSE_SKIP:
            continue
        response.headers.append(name, value)
    return response
