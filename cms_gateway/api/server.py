"""
CMS edge gateway.

Serves the prebuilt Decap CMS bundle and its config, and bridges `/auth*` and
`/callback*` to an OAuth helper so provider credentials never reach the browser.

Every request passes, in order, through:
    security headers -> rate limiter -> origin policy -> write-mutation guard
    -> route dispatch (assets, OAuth bridge, health) -> error normalizer
"""

from __future__ import annotations

import contextlib
import errno
import logging
import signal
import socket
import threading
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from cms_gateway.api.assets import build_asset_router, mount_public_dir
from cms_gateway.config import GatewayConfig, load_gateway_config
from cms_gateway.errors import (
    ForbiddenOrigin,
    GatewayError,
    PayloadTooLarge,
    RateLimited,
    error_response,
    install_error_handlers,
)
from cms_gateway.oauth import OAuthBridge, OAuthProcessSupervisor, build_oauth_bridge
from cms_gateway.security.csrf import (
    CSRF_COOKIE_NAME,
    csrf_cookie_kwargs,
    issue_token,
    new_secret,
    requires_csrf,
    token_from_body,
    token_from_headers_or_query,
    verify_token,
)
from cms_gateway.security.headers import apply_security_headers
from cms_gateway.security.origin import cors_options, is_origin_allowed
from cms_gateway.security.rate_limit import RateLimiter, rate_limit_headers, resolve_client_address

logger = logging.getLogger(__name__)

OAUTH_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class Gatekeeper:
    """
    Request hardening applied ahead of routing.

    Rejections are raised as `GatewayError`s and rendered by `error_response`,
    the same normalizer the route-level exception handlers use.
    """

    def __init__(self, cfg: GatewayConfig, limiter: RateLimiter) -> None:
        self.cfg = cfg
        self.limiter = limiter

    def client_identity(self, request: Request) -> str:
        remote = request.client.host if request.client else None
        return resolve_client_address(remote, request.headers.get("x-forwarded-for"), self.cfg.trust_proxy_hops)

    def check_rate(self, request: Request) -> Dict[str, str]:
        client = self.client_identity(request)
        decision = self.limiter.hit(client)
        headers = rate_limit_headers(decision, self.limiter.window_seconds)
        if not decision.allowed:
            raise RateLimited(f"client={client}", retry_after=decision.reset_seconds, rate_headers=headers)
        return headers

    def check_origin(self, request: Request) -> None:
        origin = request.headers.get("origin")
        if not is_origin_allowed(origin, self.cfg.allowed_origins):
            raise ForbiddenOrigin(f"origin={origin!r}")

    async def guard_writes(self, request: Request) -> None:
        length = (request.headers.get("content-length") or "").strip()
        if length.isdigit() and int(length) > self.cfg.max_body_bytes:
            raise PayloadTooLarge(f"content-length={length}")

        if not requires_csrf(request.method, request.url.path):
            return

        token = token_from_headers_or_query(request.headers, request.query_params)
        if token is None:
            body = await request.body()
            if len(body) > self.cfg.max_body_bytes:
                raise PayloadTooLarge(f"body={len(body)}")
            token = token_from_body(request.headers.get("content-type", ""), body)
        verify_token(request.cookies.get(CSRF_COOKIE_NAME), token, max_age=self.cfg.csrf_token_ttl_seconds)

    async def __call__(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        headers: Dict[str, str] = {}
        try:
            headers.update(self.check_rate(request))
            self.check_origin(request)
            await self.guard_writes(request)
        except GatewayError as exc:
            response = error_response(exc, request)
            for k, v in headers.items():
                response.headers.setdefault(k, v)
            return response

        response = await call_next(request)
        response.headers.update(headers)
        return response


async def security_headers(request: Request, call_next):  # type: ignore[no-untyped-def]
    response = await call_next(request)
    apply_security_headers(response.headers)
    return response


def create_app(
    cfg: Optional[GatewayConfig] = None,
    *,
    bridge: Optional[OAuthBridge] = None,
    supervisor: Optional[OAuthProcessSupervisor] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """
    Build the gateway application.

    `bridge` / `supervisor` default to whatever `cfg.oauth_mode` selects; tests
    inject their own.
    """
    cfg = cfg or load_gateway_config()
    if bridge is None:
        bridge, supervisor = build_oauth_bridge(cfg)
    limiter = rate_limiter or RateLimiter(cfg.rate_limit_max, cfg.rate_limit_window_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("CMS gateway listening on %s:%d (env=%s)", cfg.host, cfg.port, cfg.environment)
        if cfg.allowed_origins:
            logger.info("Allowed origins: %s", ", ".join(sorted(cfg.allowed_origins)))
        else:
            logger.info("Allowed origins: any (ORIGINS not set)")
        if supervisor is not None:
            await supervisor.start()
            logger.info("OAuth provider expected at http://%s:%d", supervisor.host, supervisor.port)
        else:
            logger.info("OAuth provider: %s", type(bridge).__name__)

        yield

        # Uvicorn has already closed the listener and drained in-flight requests.
        logger.info("Shutting down...")
        try:
            await bridge.aclose()
        finally:
            if supervisor is not None:
                await supervisor.stop()

    app = FastAPI(
        title="CMS Gateway",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = cfg
    app.state.bridge = bridge
    app.state.supervisor = supervisor
    app.state.rate_limiter = limiter

    install_error_handlers(app)
    # Added last = runs first. CORS sits inside the gatekeeper so disallowed
    # origins get the 403 before any preflight is answered.
    if cfg.allowed_origins:
        app.add_middleware(CORSMiddleware, **cors_options(cfg.allowed_origins))
    app.middleware("http")(Gatekeeper(cfg, limiter))
    app.middleware("http")(security_headers)

    @app.get("/healthz", response_class=PlainTextResponse, include_in_schema=False)
    def healthz() -> str:
        return "ok"

    @app.get("/csrf-token", include_in_schema=False)
    def csrf_token(request: Request) -> JSONResponse:
        secret = request.cookies.get(CSRF_COOKIE_NAME)
        fresh = not secret
        if fresh:
            secret = new_secret()
        resp = JSONResponse({"csrfToken": issue_token(secret)})
        resp.headers["Cache-Control"] = "no-store"
        if fresh:
            resp.set_cookie(**csrf_cookie_kwargs(cfg, secret))
        return resp

    async def oauth(request: Request) -> Response:
        return await bridge.forward(request)

    for prefix in ("/auth", "/callback"):
        app.add_api_route(prefix + "{rest:path}", oauth, methods=OAUTH_METHODS, include_in_schema=False)

    app.include_router(build_asset_router(cfg))
    mount_public_dir(app, cfg)
    return app


def bind_listener(host: str, port: int) -> socket.socket:
    """Bind (but do not listen on) the gateway socket; raises OSError if taken."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(False)
    return sock


class GatewayServer(uvicorn.Server):
    """
    uvicorn server that treats SIGTERM/SIGINT as a normal stop.

    Stock uvicorn re-raises the captured signal once serving ends, which
    kills the process before `run()` can report its exit status.
    """

    @contextlib.contextmanager
    def capture_signals(self):  # type: ignore[no-untyped-def]
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        original = {sig: signal.signal(sig, self.handle_exit) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            yield
        finally:
            for sig, handler in original.items():
                signal.signal(sig, handler)


def run(host: Optional[str] = None, port: Optional[int] = None) -> int:
    cfg = load_gateway_config()
    if host is not None or port is not None:
        cfg = replace(cfg, host=host if host is not None else cfg.host, port=port if port is not None else cfg.port)

    # Configure logging for the application
    log_level = cfg.log_level
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    # Bind before the lifespan starts the OAuth child, so a taken port cannot orphan it.
    try:
        sock = bind_listener(cfg.host, cfg.port)
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            logger.error("Port %d is in use. Set PORT env or free the port.", cfg.port)
        else:
            logger.error("Cannot listen on %s:%d: %s", cfg.host, cfg.port, str(e))
        return 1

    app = create_app(cfg)
    server = GatewayServer(
        uvicorn.Config(
            app,
            log_level=uvicorn_log_level,
            lifespan="on",
            # Client identity is resolved by the gatekeeper with TRUST_PROXY_HOPS.
            proxy_headers=False,
            server_header=False,
        )
    )
    server.run(sockets=[sock])
    return 0 if server.started else 1
