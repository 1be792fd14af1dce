from __future__ import annotations

import asyncio
import socket
from typing import List

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, RedirectResponse
from starlette.routing import Route

from cms_gateway.api.server import create_app
from cms_gateway.config import ConfigError
from cms_gateway.oauth import (
    InProcessOAuthBridge,
    OAuthProcessSupervisor,
    ProcessState,
    ProxyOAuthBridge,
    build_oauth_bridge,
    load_asgi_app,
)
from cms_gateway.oauth.proxy import ClientDisconnected, send_unless_disconnected


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class UpstreamRecorder:
    """httpx.MockTransport handler standing in for the OAuth helper."""

    def __init__(self, fail_with=None) -> None:
        self.requests: List[httpx.Request] = []
        self.fail_with = fail_with

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with("upstream broke", request=request)
        if request.url.path == "/auth":
            return httpx.Response(
                302,
                headers=[
                    ("location", "https://github.com/login/oauth/authorize?client_id=abc&scope=repo"),
                    ("set-cookie", "oauth_state=s1; Path=/; HttpOnly"),
                    ("set-cookie", "oauth_flow=f1; Path=/; HttpOnly"),
                    ("connection", "close"),
                ],
            )
        return httpx.Response(200, text=f"{request.method} {request.url.raw_path.decode()}")


def _proxy_client(make_config, handler, **bridge_kwargs) -> TestClient:
    bridge = ProxyOAuthBridge("http://127.0.0.1:8081", transport=httpx.MockTransport(handler), **bridge_kwargs)
    return TestClient(create_app(make_config(), bridge=bridge), raise_server_exceptions=False)


def test_path_and_query_are_preserved(make_config) -> None:
    upstream = UpstreamRecorder()
    client = _proxy_client(make_config, upstream)

    r = client.get("/callback?code=abc123&state=xyz")
    assert r.status_code == 200
    assert r.text == "GET /callback?code=abc123&state=xyz"

    r = client.post("/auth/github?scope=repo", content=b"a=1", headers={"Content-Type": "application/x-www-form-urlencoded"})
    assert r.text == "POST /auth/github?scope=repo"

    sent = upstream.requests[-1]
    assert sent.content == b"a=1"
    assert sent.url.host == "127.0.0.1"
    assert sent.url.port == 8081
    assert sent.headers["x-forwarded-for"] == "testclient"
    assert sent.headers["x-forwarded-host"] == "testserver"


def test_redirect_and_cookies_pass_through(make_config) -> None:
    client = _proxy_client(make_config, UpstreamRecorder())

    r = client.get("/auth", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"].startswith("https://github.com/login/oauth/authorize")
    cookies = r.headers.get_list("set-cookie")
    assert any(c.startswith("oauth_state=s1") for c in cookies)
    assert any(c.startswith("oauth_flow=f1") for c in cookies)
    # Hop-by-hop headers stay on the upstream leg.
    assert r.headers.get("connection") != "close"
    # Gateway hardening still applies to proxied responses.
    assert r.headers["x-content-type-options"] == "nosniff"


@pytest.mark.parametrize("error", [httpx.ConnectError, httpx.ReadTimeout, httpx.RemoteProtocolError])
def test_transport_failures_become_502(make_config, error) -> None:
    client = _proxy_client(make_config, UpstreamRecorder(fail_with=error))

    r = client.get("/auth")
    assert r.status_code == 502
    assert r.json() == {"error": "OAuth provider is not available"}


def test_unreachable_port_fails_fast(make_config) -> None:
    bridge = ProxyOAuthBridge(f"http://127.0.0.1:{_free_port()}", timeout_seconds=2.0)
    client = TestClient(create_app(make_config(), bridge=bridge))

    r = client.get("/callback?code=x")
    assert r.status_code == 502
    assert r.json() == {"error": "OAuth provider is not available"}


def test_exited_process_is_not_contacted(make_config) -> None:
    async def failing_spawn(*args, **kwargs):
        raise FileNotFoundError("node")

    supervisor = OAuthProcessSupervisor(["node", "app.js"], host="127.0.0.1", port=8081, spawn=failing_spawn)
    asyncio.run(supervisor.start())
    assert supervisor.state is ProcessState.EXITED

    upstream = UpstreamRecorder()
    client = _proxy_client(make_config, upstream, supervisor=supervisor)

    r = client.get("/auth")
    assert r.status_code == 502
    assert r.json() == {"error": "OAuth provider is not available"}
    assert upstream.requests == []

    # The rest of the gateway keeps serving.
    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.text == "ok"
    assert client.get("/config.yml").status_code == 200


def _chunked_body():
    yield b"x" * 10
    yield b"y" * 10


def test_chunked_body_over_limit_is_rejected_by_proxy(make_config) -> None:
    upstream = UpstreamRecorder()
    bridge = ProxyOAuthBridge("http://127.0.0.1:8081", transport=httpx.MockTransport(upstream), max_body_bytes=16)
    client = TestClient(create_app(make_config({"MAX_BODY_BYTES": "16"}), bridge=bridge))

    r = client.post("/callback", content=_chunked_body())
    assert r.status_code == 413
    assert r.json() == {"error": "Payload Too Large"}
    assert upstream.requests == []

    r = client.post("/callback", content=b"small")
    assert r.status_code == 200
    assert upstream.requests[-1].content == b"small"


def test_chunked_body_over_limit_is_rejected_in_process(make_config) -> None:
    client = TestClient(create_app(make_config(), bridge=InProcessOAuthBridge(oauth_app, max_body_bytes=16)))

    r = client.post("/callback", content=_chunked_body())
    assert r.status_code == 413


def test_bridges_get_body_limit_from_config(make_config) -> None:
    cfg = make_config({"MAX_BODY_BYTES": "2048"})
    bridge, _ = build_oauth_bridge(cfg)
    assert bridge._max_body == 2048
    asyncio.run(bridge.aclose())


@pytest.mark.asyncio
async def test_disconnect_cancels_upstream_call() -> None:
    cancelled = asyncio.Event()

    async def slow_upstream():
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    async def receive():
        return {"type": "http.disconnect"}

    request = Request({"type": "http", "method": "GET", "path": "/auth", "headers": []}, receive)
    with pytest.raises(ClientDisconnected):
        await send_unless_disconnected(request, slow_upstream())
    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_completed_upstream_call_wins() -> None:
    async def fast_upstream():
        return "done"

    async def receive():
        await asyncio.Event().wait()

    request = Request({"type": "http", "method": "GET", "path": "/auth", "headers": []}, receive)
    assert await send_unless_disconnected(request, fast_upstream()) == "done"


async def _authorize(request: Request):
    response = RedirectResponse("https://github.com/login/oauth/authorize?client_id=abc", status_code=302)
    response.set_cookie("oauth_state", "s1")
    response.set_cookie("oauth_flow", "f1")
    return response


async def _callback(request: Request):
    return PlainTextResponse(f"callback {request.url.path}?{request.url.query}")


async def _boom(request: Request):
    raise RuntimeError("provider exploded")


oauth_app = Starlette(
    routes=[
        Route("/auth", _authorize),
        Route("/auth/boom", _boom),
        Route("/callback", _callback, methods=["GET", "POST"]),
    ]
)


def test_inprocess_bridge_forwards(make_config) -> None:
    client = TestClient(create_app(make_config(), bridge=InProcessOAuthBridge(oauth_app)))

    r = client.get("/auth", follow_redirects=False)
    assert r.status_code == 302
    assert len(r.headers.get_list("set-cookie")) == 2

    r = client.get("/callback?code=abc&state=xyz")
    assert r.status_code == 200
    assert r.text == "callback /callback?code=abc&state=xyz"


def test_inprocess_fault_is_internal_error(make_config) -> None:
    client = TestClient(create_app(make_config(), bridge=InProcessOAuthBridge(oauth_app)), raise_server_exceptions=False)

    r = client.get("/auth/boom")
    assert r.status_code == 500
    assert r.json() == {"error": "Internal Server Error"}


def test_build_oauth_bridge_process_mode(make_config) -> None:
    cfg = make_config({"OAUTH_PORT": "9191", "OAUTH_COMMAND": "node app.js", "OAUTH_MAX_RESTARTS": "2"})
    bridge, supervisor = build_oauth_bridge(cfg)

    assert isinstance(bridge, ProxyOAuthBridge)
    assert bridge.base_url == "http://127.0.0.1:9191"
    assert supervisor is not None
    assert supervisor.command == ["node", "app.js"]
    assert supervisor.port == 9191
    assert supervisor.state is ProcessState.STARTING
    asyncio.run(bridge.aclose())


def test_build_oauth_bridge_inprocess_mode(make_config) -> None:
    cfg = make_config({"OAUTH_MODE": "inprocess", "OAUTH_APP": "starlette.applications:Starlette"})
    bridge, supervisor = build_oauth_bridge(cfg)

    assert isinstance(bridge, InProcessOAuthBridge)
    assert supervisor is None
    asyncio.run(bridge.aclose())


@pytest.mark.parametrize("spec", ["", "no_colon", "no_such_module_for_oauth:app", "json:missing", "json:__name__"])
def test_load_asgi_app_rejects_bad_specs(spec: str) -> None:
    with pytest.raises(ConfigError):
        load_asgi_app(spec)
