from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional

import httpx
from starlette.requests import Request
from starlette.responses import Response

from cms_gateway.errors import UpstreamUnavailable
from cms_gateway.oauth.base import read_body, to_starlette_response, upstream_headers, upstream_target
from cms_gateway.oauth.supervisor import OAuthProcessSupervisor

logger = logging.getLogger(__name__)

# Non-standard "client closed request" status; never actually delivered.
CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    pass


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message.get("type") == "http.disconnect":
            return


async def send_unless_disconnected(request: Request, call: Awaitable[Any]) -> Any:
    """
    Await `call` while watching the inbound connection.

    If the client goes away first, the upstream call is cancelled and
    `ClientDisconnected` is raised. The request body must already be consumed.
    """
    upstream = asyncio.ensure_future(call)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        await asyncio.wait({upstream, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        upstream.cancel()
        watcher.cancel()
        raise

    if upstream.done():
        watcher.cancel()
        return upstream.result()

    upstream.cancel()
    try:
        await upstream
    except asyncio.CancelledError:
        pass
    raise ClientDisconnected()


class ProxyOAuthBridge:
    """
    Reverse proxy to an OAuth subsystem listening on a loopback address.

    Connection failures, timeouts, and a supervised process that is no longer
    running all surface as `UpstreamUnavailable` (502), never as a 500 or a hang.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 5.0,
        supervisor: Optional[OAuthProcessSupervisor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_body_bytes: Optional[int] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._max_body = max_body_bytes
        self._supervisor = supervisor
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=False,
            # Loopback traffic must never be routed through HTTP(S)_PROXY.
            trust_env=False,
            transport=transport,
        )

    async def forward(self, request: Request) -> Response:
        supervisor = self._supervisor
        if supervisor is not None and not supervisor.is_running:
            raise UpstreamUnavailable(f"OAuth process is {supervisor.state.value}")

        body = await read_body(request, self._max_body)
        upstream_request = self._client.build_request(
            request.method,
            upstream_target(request),
            headers=upstream_headers(request),
            content=body,
        )
        try:
            upstream = await send_unless_disconnected(request, self._client.send(upstream_request))
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"{self.base_url}: {type(e).__name__}: {e}") from e
        except ClientDisconnected:
            logger.debug("Client went away during %s %s; upstream call cancelled", request.method, request.url.path)
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        logger.debug("OAuth %s %s -> %d", request.method, request.url.path, upstream.status_code)
        return to_starlette_response(upstream)

    async def aclose(self) -> None:
        await self._client.aclose()
